"""Compiled resource descriptors.

Registration input is a plain dict schema (see :meth:`relgraph.registry.ResourceRegistry.register`),
the compiler turns it into the immutable structures defined here. Descriptors are built once per
resource type and shared by all requests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Tuple, Union


Getter = Callable[[Any, Mapping[str, Any]], Any]
Setter = Callable[[Any, Mapping[str, Any]], Any]
Compute = Callable[[Mapping[str, Any]], Any]
ApplyFilter = Callable[[Any, Any], Any]

ONE = "one"
MANY = "many"


@dataclass(frozen=True)
class FieldDescriptor:
    """A stored or computed attribute of a resource"""

    name: str
    type: str = "string"
    belongs_to: Optional[str] = None
    as_: Optional[str] = None
    indexed: bool = False
    computed: bool = False
    getter: Optional[Getter] = None
    setter: Optional[Setter] = None
    compute: Optional[Compute] = None
    run_getter_after: Tuple[str, ...] = ()
    run_setter_after: Tuple[str, ...] = ()
    default: Any = None
    # hidden: never serialized, normally_hidden: only serialized when requested in a sparse fieldset
    hidden: bool = False
    normally_hidden: bool = False


@dataclass(frozen=True)
class IncludeWindow:
    """Caps the number of rows included per parent key"""

    limit: int
    order_by: Tuple[str, ...] = ()
    strategy: str = "window"


@dataclass(frozen=True)
class BelongsTo:
    name: str
    target_type: str
    fk_field: str
    window: Optional[IncludeWindow] = None
    cardinality = ONE


@dataclass(frozen=True)
class HasMany:
    """
    One to many relationship, the foreign key lives on the target.
    When ``via`` is set the target points back through a polymorphic relationship,
    ``fk_field``/``type_field`` are then the id and type columns of that relationship.
    """

    name: str
    target_type: str
    fk_field: str
    via: Optional[str] = None
    type_field: Optional[str] = None
    window: Optional[IncludeWindow] = None
    cardinality = MANY


@dataclass(frozen=True)
class ManyToMany:
    """
    Many to many relationship through a pivot table:
    ``own_key`` references the source, ``other_key`` references the target
    """

    name: str
    target_type: str
    through: str
    own_key: str
    other_key: str
    window: Optional[IncludeWindow] = None
    cardinality = MANY


@dataclass(frozen=True)
class Polymorphic:
    name: str
    target_types: Tuple[str, ...]
    type_field: str
    id_field: str
    window: Optional[IncludeWindow] = None
    cardinality = ONE


Relationship = Union[BelongsTo, HasMany, ManyToMany, Polymorphic]


@dataclass(frozen=True)
class SearchFieldDescriptor:
    """A filterable field, ``actual_field`` is an own column or a dotted relationship path"""

    name: str
    type: str = "string"
    filter_operator: str = "="
    actual_field: Optional[str] = None
    like_one_of: Tuple[str, ...] = ()
    split_by: Optional[str] = None
    match_all: bool = False
    apply_filter: Optional[ApplyFilter] = None
    polymorphic_field: Optional[str] = None
    target_fields: Mapping[str, str] = field(default_factory=dict)
    indexed: bool = True

    @property
    def column_path(self) -> str:
        return self.actual_field or self.name

    @property
    def is_cross_table(self) -> bool:
        return "." in self.column_path


@dataclass(frozen=True)
class ResourceDescriptor:
    type_name: str
    table_name: str
    id_field: str
    fields: Mapping[str, FieldDescriptor]
    computed: Mapping[str, FieldDescriptor]
    relationships: Mapping[str, Relationship]
    search_fields: Mapping[str, SearchFieldDescriptor]
    sortable: Tuple[str, ...]
    getter_order: Tuple[str, ...] = ()
    setter_order: Tuple[str, ...] = ()
    is_pivot: bool = False

    @property
    def id_type(self) -> str:
        id_field = self.fields.get(self.id_field)
        return id_field.type if id_field is not None else "id"

    @property
    def hidden_fields(self) -> frozenset:
        """Columns that are never serialized as attributes: linkage columns and fields marked hidden"""
        result = {self.id_field}
        result.update(name for name, fdesc in self.fields.items() if fdesc.hidden)
        for rel in self.relationships.values():
            if isinstance(rel, BelongsTo):
                result.add(rel.fk_field)
            elif isinstance(rel, Polymorphic):
                result.update((rel.type_field, rel.id_field))
        return frozenset(result)

    @property
    def attribute_names(self) -> Tuple[str, ...]:
        """Attributes that can be requested in a sparse fieldset"""
        hidden = self.hidden_fields
        stored = tuple(name for name in self.fields if name not in hidden)
        return stored + tuple(name for name, fdesc in self.computed.items() if not fdesc.hidden)

    @property
    def default_attribute_names(self) -> Tuple[str, ...]:
        """Attributes serialized when no sparse fieldset is given"""
        return tuple(name for name in self.attribute_names if not self.field(name).normally_hidden)

    def field(self, name: str) -> FieldDescriptor:
        return self.fields[name] if name in self.fields else self.computed[name]

    @property
    def indexed_columns(self) -> Tuple[str, ...]:
        return tuple(name for name, fdesc in self.fields.items() if fdesc.indexed)


@dataclass(frozen=True)
class JoinSpec:
    """
    One join of a join chain: ``alias`` is joined to the already joined ``source_alias``
    on ``source_alias.source_key = alias.target_key`` (and ``alias.type_column = type_value``)
    """

    alias: str
    source_alias: str
    source_key: str
    target_table: str
    target_key: str
    cardinality: str = ONE
    type_column: Optional[str] = None
    type_value: Optional[str] = None
    outer: bool = False


@dataclass(frozen=True)
class JoinChain:
    joins: Tuple[JoinSpec, ...]
    final_alias: str
    final_column: str
    final_type: str
    cardinality: str = ONE
