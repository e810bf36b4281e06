"""
ResourceEngine: the entry point to query resources

    registry = ResourceRegistry()
    registry.register("books", {"title": {"type": "string", "search": True}})
    engine = ResourceEngine(registry, SQLAlchemyStorage.from_url("sqlite+aiosqlite:///books.db"))
    document = await engine.query("books", filters={"title": "Dune"}, include=["authors"])

Request parameters are validated before the storage is queried, once the storage is queried only
NotFoundError and StorageError can be raised and no partial document is returned.
"""
from typing import Any, Mapping, Optional
from .config import EngineConfig
from .document import DocumentAssembler
from .errors import NotFoundError, ValidationError
from .includes import IncludeResolver
from .jsonapi_types import JSONAPIResponseDocument
from .pagination import CURSOR, calculate_pagination_meta, encode_cursor, pagination_links, split_page
from .planner import QueryPlanner


class ResourceEngine:
    def __init__(self, registry, storage, config: Optional[EngineConfig] = None) -> None:
        """
        :param registry: ResourceRegistry
        :param storage: object implementing the ``relgraph.storage.Storage`` protocol
        :param config: EngineConfig, defaults are used when not supplied
        """
        self.registry = registry
        self.storage = storage
        self.config = config if config is not None else EngineConfig()
        self.planner = QueryPlanner(registry, self.config)
        self.includes = IncludeResolver(registry, storage, self.planner, self.config)
        self.assembler = DocumentAssembler(registry, self.config)

    def _check_type(self, type_name: str) -> None:
        if type_name not in self.registry:
            raise ValidationError(f"Unknown resource type '{type_name}'", allowed=sorted(self.registry.type_names))

    async def query(
        self,
        type_name: str,
        filters: Optional[Mapping[str, Any]] = None,
        sort=None,
        page: Optional[Mapping[str, Any]] = None,
        include=None,
        fields: Optional[Mapping[str, Any]] = None,
        query_args: Optional[Mapping[str, Any]] = None,
    ) -> JSONAPIResponseDocument:
        """
        :param type_name: resource type
        :param filters: search field => value
        :param sort: sort tokens, eg. ["-year", "title"]
        :param page: page parameters: {number, size}, {offset, limit} or {size, after}
        :param include: relationship paths, eg. ["books", "books.authors"]
        :param fields: sparse fieldsets, type => attribute names
        :param query_args: url query arguments kept in the pagination links
        :return: jsonapi document, the pagination info is in meta.pagination
        """
        self._check_type(type_name)
        tree = self.includes.build_tree(type_name, include)
        fieldsets = self.assembler.validate_fields(fields)
        plan = self.planner.plan(type_name, filters, sort, page)

        rows = await self.storage.execute(plan)
        rows, has_more = split_page(rows, plan.page)
        total = await self.storage.count(plan) if plan.count_statement is not None else None
        next_cursor = None
        if plan.page.mode == CURSOR and has_more:
            next_cursor = encode_cursor(plan.sort_signature, plan.cursor_values(rows[-1]))
        pagination = calculate_pagination_meta(plan.page, total, has_more, next_cursor)

        links = None
        if self.config.url_prefix:
            links = pagination_links(f"{self.config.url_prefix}/{type_name}", plan.page, query_args, total, next_cursor)

        result = await self.includes.resolve(rows, type_name, tree) if tree.children else None
        return await self.assembler.assemble(rows, type_name, result, fieldsets, meta={"pagination": pagination}, links=links)

    async def get(self, type_name: str, object_id, include=None, fields: Optional[Mapping[str, Any]] = None) -> JSONAPIResponseDocument:
        """
        :return: jsonapi document with a single resource object as primary data
        :raises NotFoundError: when there's no resource with ``object_id``
        """
        self._check_type(type_name)
        tree = self.includes.build_tree(type_name, include)
        fieldsets = self.assembler.validate_fields(fields)
        try:
            plan = self.planner.plan_get(type_name, object_id)
        except ValidationError:
            raise NotFoundError(f"Invalid {type_name} id '{object_id}'")

        rows = await self.storage.execute(plan)
        if not rows:
            raise NotFoundError(f"No '{type_name}' with id '{object_id}'")
        result = await self.includes.resolve(rows, type_name, tree) if tree.children else None
        document = await self.assembler.assemble(rows, type_name, result, fieldsets, single=True)
        if self.config.url_prefix:
            document["links"] = {"self": f"{self.config.url_prefix}/{type_name}/{object_id}"}
        return document

