import asyncio
from typing import Any, Callable, Optional

import pytest

from relgraph import ResourceEngine, ResourceRegistry, SQLAlchemyStorage
from relgraph.config import EngineConfig


def library_registry(author_books_include: Optional[dict] = None) -> ResourceRegistry:
    """
    countries <- publishers <- books <-> authors, comments belong to books or authors
    """
    author_books = {"manyToMany": "books", "through": "book_authors", "foreignKey": "author_id", "otherKey": "book_id"}
    if author_books_include:
        author_books["include"] = author_books_include

    registry = ResourceRegistry()
    registry.register(
        "countries",
        {"name": {"type": "string", "search": True}, "code": {"type": "string"}},
        relationships={
            "publishers": {"hasMany": "publishers", "foreignKey": "country_id"},
            "books": {"hasMany": "books", "foreignKey": "country_id"},
        },
    )
    registry.register(
        "publishers",
        {"name": {"type": "string", "search": True}, "country_id": {"belongsTo": "countries", "as": "country", "search": True}},
        relationships={"books": {"hasMany": "books", "foreignKey": "publisher_id"}},
    )
    registry.register(
        "books",
        {
            "title": {"type": "string", "search": True},
            "year": {"type": "integer"},
            "price": {"type": "number"},
            "country_id": {"belongsTo": "countries", "as": "country", "search": True},
            "publisher_id": {"belongsTo": "publishers", "as": "publisher"},
        },
        relationships={
            "authors": {"manyToMany": "authors", "through": "book_authors", "foreignKey": "book_id", "otherKey": "author_id"},
            "comments": {"hasMany": "comments", "via": "commentable"},
        },
        search_schema={
            "publisher_country": {"actualField": "publisher.country.name", "filterOperator": "="},
            "author_name": {"actualField": "authors.name", "filterOperator": "like"},
            "text": {"likeOneOf": ["title", "publisher.name"], "splitBy": " ", "matchAll": True},
            "min_year": {"type": "integer", "actualField": "year", "filterOperator": ">="},
        },
        sortable=["title", "year", "price", "publisher.name", "authors.name"],
    )
    registry.register(
        "authors",
        {"name": {"type": "string", "search": True}},
        relationships={"books": author_books, "comments": {"hasMany": "comments", "via": "commentable"}},
    )
    registry.register(
        "book_authors",
        {"book_id": {"belongsTo": "books", "as": "book"}, "author_id": {"belongsTo": "authors", "as": "author"}},
    )
    registry.register(
        "comments",
        {"body": {"type": "string"}, "commentable_type": {"type": "string"}, "commentable_id": {"type": "integer"}},
        relationships={
            "commentable": {"belongsToPolymorphic": ["books", "authors"], "typeField": "commentable_type", "idField": "commentable_id"}
        },
        search_schema={"about": {"polymorphicField": "commentable", "targetFields": {"books": "title", "authors": "name"}, "filterOperator": "like"}},
    )
    return registry


LIBRARY_DATA = {
    "countries": [{"id": 1, "name": "Netherlands", "code": "NL"}, {"id": 2, "name": "Belgium", "code": "BE"}],
    "publishers": [{"id": 1, "name": "Querido", "country_id": 1}, {"id": 2, "name": "Lannoo", "country_id": 2}],
    "books": [
        {"id": 1, "title": "Dune", "year": 1965, "price": 9.5, "country_id": 1, "publisher_id": 1},
        {"id": 2, "title": "Emma", "year": 1815, "price": 5.0, "country_id": 1, "publisher_id": 2},
        {"id": 3, "title": "Ulysses", "year": 1922, "price": 12.0, "country_id": 2, "publisher_id": 2},
        {"id": 4, "title": "Beloved", "year": 1987, "price": 11.0, "country_id": 2, "publisher_id": 1},
        {"id": 5, "title": "Hamlet", "year": 1603, "price": 4.0, "country_id": 2, "publisher_id": 2},
    ],
    "authors": [{"id": 1, "name": "Ann"}, {"id": 2, "name": "Bob"}, {"id": 3, "name": "Cy"}],
    "book_authors": [
        {"book_id": 1, "author_id": 1},
        {"book_id": 2, "author_id": 1},
        {"book_id": 2, "author_id": 2},
        {"book_id": 3, "author_id": 3},
    ],
    "comments": [
        {"id": 1, "body": "great", "commentable_type": "books", "commentable_id": 1},
        {"id": 2, "body": "meh", "commentable_type": "authors", "commentable_id": 1},
        {"id": 3, "body": "wow", "commentable_type": "books", "commentable_id": 2},
    ],
}


class RecordingStorage:
    """
    Storage fake that records the calls and returns canned rows
    """

    def __init__(self, rows=None, total=0):
        self.rows = rows or []
        self.total = total
        self.calls = []

    async def execute(self, plan):
        self.calls.append(("execute", plan))
        return list(self.rows)

    async def count(self, plan):
        self.calls.append(("count", plan))
        return self.total

    async def fetch_by_keys(self, fetch):
        self.calls.append(("fetch_by_keys", fetch))
        return []


class CountingStorage(SQLAlchemyStorage):
    def __init__(self, engine):
        super().__init__(engine)
        self.fetches = []
        self.executed = 0

    async def execute(self, plan):
        self.executed += 1
        return await super().execute(plan)

    async def fetch_by_keys(self, fetch):
        self.fetches.append(fetch)
        return await super().fetch_by_keys(fetch)


async def insert_rows(storage: SQLAlchemyStorage, registry: ResourceRegistry, data: dict) -> None:
    async with storage.engine.begin() as conn:
        for table_name, rows in data.items():
            if rows:
                await conn.execute(registry.metadata.tables[table_name].insert(), rows)


@pytest.fixture
def library():
    return library_registry()


@pytest.fixture
def run_engine(tmp_path):
    """
    Run ``func(engine)`` against a fresh sqlite database filled with ``data``,
    everything runs in one event loop
    """
    counter = {"n": 0}

    def run(registry: ResourceRegistry, data: dict, func: Callable[[ResourceEngine], Any], config: Optional[EngineConfig] = None):
        counter["n"] += 1
        db_path = tmp_path / "relgraph_{}.db".format(counter["n"])
        url = f"sqlite+aiosqlite:///{db_path}"

        async def main():
            storage = CountingStorage(SQLAlchemyStorage.from_url(url).engine)
            try:
                await storage.create_tables(registry.metadata)
                await insert_rows(storage, registry, data)
                engine = ResourceEngine(registry, storage, config)
                return await func(engine)
            finally:
                await storage.dispose()

        return asyncio.run(main())

    return run


def ids(document):
    return [item["id"] for item in document["data"]]


def attr(document, name):
    return [item["attributes"][name] for item in document["data"]]
