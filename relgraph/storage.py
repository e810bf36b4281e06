# Storage collaborators
#
# The engine only plans queries, a storage object executes them.
# Transaction boundaries are owned by the caller: SQLAlchemyStorage only reads.
#
from typing import Any, Dict, List, Mapping, Protocol
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
import relgraph
from .errors import StorageError
from .planner import KeyFetch, QueryPlan

Row = Mapping[str, Any]


class Storage(Protocol):
    async def execute(self, plan: QueryPlan) -> List[Row]: ...

    async def count(self, plan: QueryPlan) -> int: ...

    async def fetch_by_keys(self, fetch: KeyFetch) -> List[Row]: ...


class SQLAlchemyStorage:
    """
    Executes the query plans on an sqlalchemy AsyncEngine, eg. "sqlite+aiosqlite:///books.db"
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "SQLAlchemyStorage":
        return cls(create_async_engine(url, **kwargs))

    async def _fetch_all(self, statement) -> List[Dict[str, Any]]:
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(statement)
                return [dict(row._mapping) for row in result]
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

    async def execute(self, plan: QueryPlan) -> List[Dict[str, Any]]:
        rows = await self._fetch_all(plan.statement)
        relgraph.log.debug(f"{plan.type_name}: fetched {len(rows)} rows")
        return rows

    async def count(self, plan: QueryPlan) -> int:
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(plan.count_statement)
                return int(result.scalar_one())
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

    async def fetch_by_keys(self, fetch: KeyFetch) -> List[Dict[str, Any]]:
        rows = await self._fetch_all(fetch.statement)
        relgraph.log.debug(f"{fetch.relationship}: fetched {len(rows)} {fetch.type_name} rows for {len(fetch.keys)} keys")
        return rows

    async def create_tables(self, metadata) -> None:
        """
        Create the tables (and indexes) of ``metadata``, eg. ``registry.metadata``
        """
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

    async def dispose(self) -> None:
        await self.engine.dispose()
