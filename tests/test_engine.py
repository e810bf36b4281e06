import pytest

from conftest import LIBRARY_DATA, attr, ids, library_registry
from relgraph import NotFoundError, ResourceRegistry, ValidationError
from relgraph.config import EngineConfig


def linkage(resource, name):
    data = resource["relationships"][name]["data"]
    if isinstance(data, list):
        return [item["id"] for item in data]
    return data


def by_id(document, type_name):
    resources = document["data"] if isinstance(document["data"], list) else [document["data"]]
    result = {item["id"]: item for item in resources if item["type"] == type_name}
    for item in document.get("included", []):
        if item["type"] == type_name:
            result[item["id"]] = item
    return result


def test_filter_on_foreign_key(library, run_engine):
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("books", filters={"country": 1}))
    assert ids(document) == ["1", "2"]
    assert document["jsonapi"] == {"version": "1.0"}
    assert "included" not in document


def test_offset_pagination(run_engine):
    registry = ResourceRegistry()
    registry.register("books", {"title": {"type": "string", "search": True}})
    data = {"books": [{"id": i, "title": f"Book {i}"} for i in range(1, 11)]}

    document = run_engine(registry, data, lambda engine: engine.query("books", page={"number": 2, "size": 3}))
    assert ids(document) == ["4", "5", "6"]
    assert document["meta"]["pagination"] == {"page": 2, "pageSize": 3, "total": 10, "pageCount": 4, "hasMore": True}


def test_offset_pagination_sorted_by_title(run_engine):
    registry = ResourceRegistry()
    registry.register("books", {"title": {"type": "string", "search": True}})
    data = {"books": [{"id": i, "title": f"Book {i:02d}"} for i in (7, 2, 10, 4, 9, 1, 6, 3, 8, 5)]}

    document = run_engine(registry, data, lambda engine: engine.query("books", sort=["title"], page={"number": 2, "size": 3}))
    assert attr(document, "title") == ["Book 04", "Book 05", "Book 06"]
    assert ids(document) == ["4", "5", "6"]
    assert document["meta"]["pagination"]["total"] == 10


def test_search_operator_override(run_engine):
    registry = ResourceRegistry()
    registry.register(
        "products",
        {"name": {"type": "string"}, "price": {"type": "number", "search": True}},
        search_schema={"price": {"type": "number", "filterOperator": "between"}},
    )
    data = {"products": [{"id": i, "name": f"p{i}", "price": price} for i, price in enumerate([5, 10, 15, 25], start=1)]}

    document = run_engine(registry, data, lambda engine: engine.query("products", filters={"price": "10,20"}))
    assert ids(document) == ["2", "3"]


def test_search_true_is_exact_match(run_engine):
    registry = ResourceRegistry()
    registry.register("products", {"name": {"type": "string", "search": True}, "price": {"type": "number"}})
    data = {"products": [{"id": 1, "name": "Widget A", "price": 5}, {"id": 2, "name": "Widget AB", "price": 7}, {"id": 3, "name": "Widget", "price": 9}]}

    document = run_engine(registry, data, lambda engine: engine.query("products", filters={"name": "Widget A"}))
    assert ids(document) == ["1"]
    document = run_engine(registry, data, lambda engine: engine.query("products", filters={"name": "Widget"}))
    assert ids(document) == ["3"]


def test_nested_include_with_reverse_linkage(library, run_engine):
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("authors", include=["books", "books.authors"]))
    authors = by_id(document, "authors")
    books = by_id(document, "books")

    assert linkage(authors["1"], "books") == ["1", "2"]
    assert linkage(authors["3"], "books") == ["3"]
    assert linkage(books["2"], "authors") == ["1", "2"]
    assert linkage(books["1"], "authors") == ["1"]
    # authors are primary data, they're never repeated in included
    assert {item["type"] for item in document["included"]} == {"books"}
    assert sorted(item["id"] for item in document["included"]) == ["1", "2", "3"]


def test_one_fetch_per_relationship_per_level(library, run_engine):
    async def query(engine):
        document = await engine.query("authors", include=["books", "books.authors"])
        return document, engine.storage

    document, storage = run_engine(library, LIBRARY_DATA, query)
    assert storage.executed == 1
    assert [(fetch.type_name, fetch.relationship) for fetch in storage.fetches] == [("books", "books"), ("authors", "authors")]


def test_included_records_are_unique(library, run_engine):
    async def query(engine):
        document = await engine.query("books", include=["country", "publisher.country"])
        return document, engine.storage

    document, storage = run_engine(library, LIBRARY_DATA, query)
    keys = [(item["type"], item["id"]) for item in document["included"]]
    assert len(keys) == len(set(keys))
    assert sorted(keys) == [("countries", "1"), ("countries", "2"), ("publishers", "1"), ("publishers", "2")]
    # the countries of the publishers were already loaded through books.country
    assert [fetch.relationship for fetch in storage.fetches] == ["country", "publisher"]


def test_cross_table_filter(library, run_engine):
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("books", filters={"publisher_country": "Netherlands"}))
    assert ids(document) == ["1", "4"]


def test_like_one_of_filter(library, run_engine):
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("books", filters={"text": "dune querido"}))
    assert ids(document) == ["1"]
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("books", filters={"text": "lannoo"}))
    assert ids(document) == ["2", "3", "5"]


def test_to_many_filter_returns_distinct_rows(library, run_engine):
    data = dict(LIBRARY_DATA, authors=[{"id": 1, "name": "Ann"}, {"id": 2, "name": "Anna"}, {"id": 3, "name": "Cy"}])
    document = run_engine(library, data, lambda engine: engine.query("books", filters={"author_name": "ann"}))
    assert ids(document) == ["1", "2"]
    assert document["meta"]["pagination"]["total"] == 2


def test_polymorphic_filter(library, run_engine):
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("comments", filters={"about": "Dune"}))
    assert ids(document) == ["1"]
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("comments", filters={"about": "Ann"}))
    assert ids(document) == ["2"]


def test_polymorphic_include(library, run_engine):
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("comments", include=["commentable"]))
    comments = by_id(document, "comments")
    assert comments["1"]["relationships"]["commentable"]["data"] == {"type": "books", "id": "1"}
    assert comments["2"]["relationships"]["commentable"]["data"] == {"type": "authors", "id": "1"}
    assert sorted((item["type"], item["id"]) for item in document["included"]) == [("authors", "1"), ("books", "1"), ("books", "2")]


def test_polymorphic_include_reverse_linkage(library, run_engine):
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("books", include=["comments"]))
    books = by_id(document, "books")
    assert linkage(books["1"], "comments") == ["1"]
    assert linkage(books["3"], "comments") == []
    assert sorted(item["id"] for item in document["included"]) == ["1", "3"]


def test_offset_pages_are_consistent(library, run_engine):
    async def query(engine):
        result = []
        for number in (1, 2, 3):
            document = await engine.query("books", sort=["-year"], page={"number": number, "size": 2})
            result.extend(ids(document))
        return result

    assert run_engine(library, LIBRARY_DATA, query) == ["4", "1", "3", "2", "5"]


def test_cursor_pages_are_consistent(library, run_engine):
    async def query(engine):
        result, page = [], {"size": 2}
        while True:
            document = await engine.query("books", sort=["publisher.name", "-price"], page=page)
            result.extend(ids(document))
            pagination = document["meta"]["pagination"]
            if not pagination["hasMore"]:
                assert pagination["cursor"] == {}
                return result
            page = {"size": 2, "after": pagination["cursor"]["next"]}

    # Lannoo before Querido, most expensive first
    assert run_engine(library, LIBRARY_DATA, query) == ["3", "2", "5", "4", "1"]


def test_cursor_pagination_with_equal_sort_values(library, run_engine):
    async def query(engine):
        result, page = [], {"size": 1}
        while page:
            document = await engine.query("books", filters={"country": 2}, sort=["publisher.name"], page=page)
            result.extend(ids(document))
            next_cursor = document["meta"]["pagination"]["cursor"].get("next")
            page = {"size": 1, "after": next_cursor} if next_cursor else None
        return result

    assert run_engine(library, LIBRARY_DATA, query) == ["3", "5", "4"]


def test_counts_can_be_disabled(library, run_engine):
    config = EngineConfig(enable_pagination_counts=False)
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("books", page={"number": 1, "size": 2}), config)
    assert document["meta"]["pagination"] == {"page": 1, "pageSize": 2}


def test_get(library, run_engine):
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.get("books", "2", include=["authors"]))
    assert document["data"]["id"] == "2"
    assert document["data"]["attributes"]["title"] == "Emma"
    assert linkage(document["data"], "authors") == ["1", "2"]
    assert sorted(item["id"] for item in document["included"]) == ["1", "2"]


@pytest.mark.parametrize("object_id", [99, "abc"])
def test_get_not_found(library, run_engine, object_id):
    with pytest.raises(NotFoundError):
        run_engine(library, LIBRARY_DATA, lambda engine: engine.get("books", object_id))


def test_include_depth_limit(library, run_engine):
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("countries", include=["publishers.books.authors"]))
    assert {item["type"] for item in document["included"]} == {"publishers", "books", "authors"}

    with pytest.raises(ValidationError, match="maximum depth of 3"):
        run_engine(library, LIBRARY_DATA, lambda engine: engine.query("countries", include=["publishers.books.authors.comments"]))


def test_include_window(run_engine):
    registry = library_registry({"limit": 1, "orderBy": ["-year"]})
    document = run_engine(registry, LIBRARY_DATA, lambda engine: engine.query("authors", include=["books"]))
    authors = by_id(document, "authors")
    assert linkage(authors["1"], "books") == ["1"]
    assert linkage(authors["2"], "books") == ["2"]
    assert linkage(authors["3"], "books") == ["3"]


def test_unwindowed_include_is_not_capped_by_max_include_limit(library, run_engine):
    config = EngineConfig(max_include_limit=2)
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("authors", include=["books"]), config)
    authors = by_id(document, "authors")
    assert linkage(authors["1"], "books") == ["1", "2"]
    assert linkage(authors["2"], "books") == ["2"]
    assert linkage(authors["3"], "books") == ["3"]


def test_include_window_capped_by_max_include_limit(run_engine):
    registry = library_registry({"limit": 5, "orderBy": ["-year"]})
    config = EngineConfig(max_include_limit=1)
    document = run_engine(registry, LIBRARY_DATA, lambda engine: engine.query("authors", include=["books"]), config)
    authors = by_id(document, "authors")
    assert linkage(authors["1"], "books") == ["1"]
    assert linkage(authors["2"], "books") == ["2"]


def test_sparse_fieldsets(library, run_engine):
    document = run_engine(
        library, LIBRARY_DATA, lambda engine: engine.query("books", include=["country"], fields={"books": ["title"], "countries": "code"})
    )
    assert all(set(item["attributes"]) == {"title"} for item in document["data"])
    assert all(set(item["attributes"]) == {"code"} for item in document["included"])
    assert document["data"][0]["relationships"]["country"]["data"] == {"type": "countries", "id": "1"}


def test_hidden_fields_and_to_one_linkage(library, run_engine):
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("books", filters={"title": "Dune"}))
    book = document["data"][0]
    assert set(book["attributes"]) == {"title", "year", "price"}
    assert book["relationships"]["country"]["data"] == {"type": "countries", "id": "1"}
    assert book["relationships"]["publisher"]["data"] == {"type": "publishers", "id": "1"}
    # to-many relationships are only serialized when included
    assert "authors" not in book["relationships"]


def test_hidden_and_normally_hidden_fields(run_engine):
    registry = ResourceRegistry()
    registry.register(
        "users",
        {
            "name": {"type": "string", "search": True},
            "password": {"type": "string", "hidden": True},
            "salary": {"type": "number", "normallyHidden": True},
            "visible_to_compute": {"type": "string", "compute": lambda attributes: ",".join(sorted(attributes))},
            "band": {"type": "string", "compute": lambda attributes: "high" if attributes["salary"] > 50 else "low"},
        },
    )
    data = {"users": [{"id": 1, "name": "ann", "password": "secret", "salary": 70}]}

    document = run_engine(registry, data, lambda engine: engine.query("users"))
    assert document["data"][0]["attributes"] == {"name": "ann", "visible_to_compute": "name,salary", "band": "high"}

    document = run_engine(registry, data, lambda engine: engine.query("users", fields={"users": ["name", "salary"]}))
    assert document["data"][0]["attributes"] == {"name": "ann", "salary": 70}

    document = run_engine(registry, data, lambda engine: engine.get("users", 1))
    assert "password" not in document["data"]["attributes"]
    assert "salary" not in document["data"]["attributes"]

    with pytest.raises(ValidationError, match="Unknown field 'password'"):
        run_engine(registry, data, lambda engine: engine.query("users", fields={"users": "name,password"}))


def test_getters_run_before_computed_fields(run_engine):
    async def slug(attributes):
        return attributes["full"].lower().replace(" ", "-")

    registry = ResourceRegistry()
    registry.register(
        "people",
        {
            "first": {"type": "string", "getter": lambda value, row: value.title()},
            "last": {"type": "string", "getter": lambda value, row: value.upper(), "runGetterAfter": ["first"]},
            "full": {"type": "string", "compute": lambda attributes: f"{attributes['first']} {attributes['last']}"},
            "slug": {"type": "string", "compute": slug},
        },
    )
    data = {"people": [{"id": 1, "first": "ann", "last": "lee"}]}
    document = run_engine(registry, data, lambda engine: engine.query("people"))
    assert document["data"][0]["attributes"] == {"first": "Ann", "last": "LEE", "full": "Ann LEE", "slug": "ann-lee"}


def test_links_with_url_prefix(library, run_engine):
    config = EngineConfig(url_prefix="/api")
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("books", page={"number": 1, "size": 2}), config)
    assert set(document["links"]) == {"self", "first", "next", "last"}
    assert document["links"]["last"].startswith("/api/books?")
    assert document["data"][0]["links"] == {"self": "/api/books/1"}

    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.get("books", 1), config)
    assert document["links"] == {"self": "/api/books/1"}


def test_sort_on_own_field(library, run_engine):
    document = run_engine(library, LIBRARY_DATA, lambda engine: engine.query("books", sort="-price,title"))
    assert attr(document, "price") == [12.0, 11.0, 9.5, 5.0, 4.0]


def test_resolve_includes(library, run_engine):
    async def resolve(engine):
        primary = await engine.storage.execute(engine.planner.plan("books", {"title": "Emma"}))
        with pytest.raises(ValidationError, match="maximum depth of 1"):
            await engine.includes.resolve_includes(primary, "books", ["authors.books"], max_depth=1)
        return await engine.includes.resolve_includes(primary, "books", ["authors.books"])

    result = run_engine(library, LIBRARY_DATA, resolve)
    assert result.linkage[("books", "2")]["authors"] == [("authors", "1"), ("authors", "2")]
    assert result.linkage[("authors", "1")]["books"] == [("books", "1"), ("books", "2")]
    assert ("books", "2") not in result.included
    assert sorted(result.included) == [("authors", "1"), ("authors", "2"), ("books", "1")]
