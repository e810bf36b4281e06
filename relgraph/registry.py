from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
import sqlalchemy
import relgraph
from .compiler import compile_resource
from .config import EngineConfig
from .descriptors import ResourceDescriptor
from .errors import ConfigurationError


@dataclass(frozen=True)
class ResourceRegistration:
    """Raw registration input of a resource type"""

    type_name: str
    schema: Mapping[str, Mapping[str, Any]]
    relationships: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    search_schema: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    id_field: str = "id"
    table_name: Optional[str] = None
    sortable: Optional[Sequence[str]] = None
    enrichers: Sequence[Callable] = ()
    pivot: Optional[bool] = None


class ResourceRegistry:
    """
    Holds the registered resource types and their compiled descriptors.

    Descriptors are compiled on first use and cached. Compilation is a pure function of the
    registered input, so concurrent first use may compile twice but always yields the same result.
    """

    def __init__(self, enrichers: Sequence[Callable] = (), query_max_limit: Optional[int] = None) -> None:
        """
        :param enrichers: ``(schema) -> schema`` callbacks applied to every registered type
        :param query_max_limit: maximum include window limit, defaults to the QUERY_MAX_LIMIT setting
        """
        self.enrichers = list(enrichers)
        self.query_max_limit = query_max_limit
        self._registrations: Dict[str, ResourceRegistration] = {}
        self._descriptors: Dict[str, ResourceDescriptor] = {}
        self._graph = None
        self._metadata = None

    def register(
        self,
        type_name: str,
        schema: Mapping[str, Mapping[str, Any]],
        relationships: Optional[Mapping[str, Mapping[str, Any]]] = None,
        search_schema: Optional[Mapping[str, Mapping[str, Any]]] = None,
        id_field: str = "id",
        table_name: Optional[str] = None,
        sortable: Optional[Sequence[str]] = None,
        enrichers: Sequence[Callable] = (),
        pivot: Optional[bool] = None,
    ) -> ResourceRegistration:
        """
        Register a resource type

        :param type_name: jsonapi type, eg. "books"
        :param schema: field name => field definition
        :param relationships: relationship name => hasMany/manyToMany/belongsToPolymorphic definition
        :param search_schema: explicit search fields, these replace the ``search`` markers of the schema
        :param id_field: primary key column
        :param table_name: defaults to ``type_name``
        :param sortable: sortable fields, defaults to all stored fields
        :param enrichers: ``(schema) -> schema`` callbacks
        :param pivot: overrides the pivot table detection
        """
        if type_name in self._registrations:
            relgraph.log.warning(f"Resource type '{type_name}' registered again")
        registration = ResourceRegistration(
            type_name=type_name,
            schema=schema,
            relationships=relationships or {},
            search_schema=search_schema or {},
            id_field=id_field,
            table_name=table_name,
            sortable=sortable,
            enrichers=tuple(enrichers),
            pivot=pivot,
        )
        self._registrations[type_name] = registration
        # relationship targets of other types may depend on this registration
        self._descriptors = {}
        self._graph = None
        self._metadata = None
        return registration

    def configure(self, config) -> None:
        """
        Use the QUERY_MAX_LIMIT of an EngineConfig for the include windows, compiled descriptors are dropped
        """
        self.query_max_limit = config.query_max_limit
        self._descriptors = {}
        self._graph = None
        self._metadata = None

    def __contains__(self, type_name: str) -> bool:
        return type_name in self._registrations

    @property
    def type_names(self) -> List[str]:
        return list(self._registrations)

    def compile(self, type_name: str) -> ResourceDescriptor:
        descriptor = self._descriptors.get(type_name)
        if descriptor is not None:
            return descriptor
        if type_name not in self._registrations:
            raise ConfigurationError(f"Unknown resource type '{type_name}'")
        max_limit = self.query_max_limit
        if max_limit is None:
            max_limit = EngineConfig.from_config().query_max_limit
        descriptor = compile_resource(self._registrations[type_name], self._registrations, self.enrichers, max_limit)
        self._descriptors[type_name] = descriptor
        return descriptor

    def table_name(self, name: str) -> str:
        """
        :param name: a type name or a table name (pivot tables don't need to be registered)
        """
        if name in self._registrations:
            return self.compile(name).table_name
        return name

    @property
    def graph(self):
        from .graph import RelationshipGraph

        if self._graph is None:
            self._graph = RelationshipGraph(self)
        return self._graph

    @property
    def metadata(self) -> sqlalchemy.MetaData:
        from .tables import build_metadata

        if self._metadata is None:
            self._metadata = build_metadata(self)
        return self._metadata

    def table(self, name: str) -> sqlalchemy.Table:
        return self.metadata.tables[self.table_name(name)]

    def validate(self) -> None:
        """
        Compile all registered types and resolve all cross-table search and sort paths,
        raises ConfigurationError for the first problem found
        """
        for type_name in self._registrations:
            descriptor = self.compile(type_name)
            for sfield in descriptor.search_fields.values():
                for path in sfield.like_one_of or (sfield.column_path,):
                    if "." in path:
                        self.graph.build_join_chain(type_name, path)
            for name in descriptor.sortable:
                if "." in name:
                    self.graph.build_join_chain(type_name, name)
        relgraph.log.debug(f"validated resource types: {', '.join(self._registrations)}")
