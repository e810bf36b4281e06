"""
Query planning: filters, sort and page parameters => QueryPlan

All parameters are validated against the compiled descriptors while planning,
so invalid requests fail before the storage is queried.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import sqlalchemy as sa
import relgraph
from .attr_parse import parse_attr, parse_filter_value
from .descriptors import (
    MANY,
    ONE,
    BelongsTo,
    HasMany,
    IncludeWindow,
    JoinSpec,
    ManyToMany,
    Polymorphic,
    Relationship,
    ResourceDescriptor,
    SearchFieldDescriptor,
)
from .errors import ConfigurationError, ValidationError
from .pagination import CURSOR, OFFSET, PageRequest, cursor_predicate, decode_cursor, normalize_page

PARENT_KEY = "_rg_parent_key"
ROW_NUMBER = "_rg_row_number"
SORT_LABEL = "_rg_sort_{}"


@dataclass(frozen=True)
class SortKey:
    token: str
    name: str
    column: Any
    descending: bool
    label: str
    own: bool = True

    def order(self):
        return self.column.desc() if self.descending else self.column.asc()


@dataclass(frozen=True)
class QueryPlan:
    type_name: str
    statement: Any
    count_statement: Optional[Any]
    page: PageRequest
    sort_keys: Tuple[SortKey, ...]
    joins: Tuple[JoinSpec, ...] = ()
    distinct: bool = False

    @property
    def sort_signature(self) -> List[str]:
        return [key.token for key in self.sort_keys]

    def cursor_values(self, row: Mapping[str, Any]) -> Tuple[Any, ...]:
        return tuple(row[key.label] for key in self.sort_keys)


@dataclass(frozen=True)
class KeyFetch:
    """
    Batched fetch of the rows related to a set of parent keys.
    Every row of ``statement`` carries the parent key it was fetched for in the ``_rg_parent_key`` column.
    """

    type_name: str
    relationship: str
    table: sa.Table
    keys: Tuple[Any, ...]
    statement: Any
    joins: Tuple[JoinSpec, ...] = ()
    window: Optional[IncludeWindow] = None
    # rows per parent key, set for windowed fetches only
    limit: Optional[int] = None


def parse_sort(sort) -> List[str]:
    if not sort:
        return []
    if isinstance(sort, str):
        sort = sort.split(",")
    return [token.strip() for token in sort if token and token.strip()]


def apply_operator(column, operator: str, value: Any):
    """
    :return: sqlalchemy predicate for ``column <operator> value``
    """
    if value is None:
        return column.is_not(None) if operator == "!=" else column.is_(None)
    value = parse_filter_value(column, operator, value)
    if operator in ("like", "contains"):
        return column.ilike(f"%{value}%")
    if operator == "startswith":
        return column.ilike(f"{value}%")
    if operator == "endswith":
        return column.ilike(f"%{value}")
    if operator == "in":
        return column.in_(value)
    if operator == "between":
        return column.between(*value)
    if operator == "=":
        return column.in_(value) if isinstance(value, list) else column == value
    if operator == "!=":
        return column.not_in(value) if isinstance(value, list) else column != value
    if operator == "<":
        return column < value
    if operator == "<=":
        return column <= value
    if operator == ">":
        return column > value
    if operator == ">=":
        return column >= value
    raise ConfigurationError(f"Invalid filterOperator '{operator}'")


class _Joins:
    """
    The joins of one query, deduplicated by alias
    """

    def __init__(self, registry, base, base_alias: str) -> None:
        self.registry = registry
        self.base = base
        self.aliases = {base_alias: base}
        self.joins: List[JoinSpec] = []
        self.fan_out = False

    def add(self, joins: Sequence[JoinSpec]) -> None:
        for join in joins:
            if join.alias in self.aliases:
                continue
            self.aliases[join.alias] = self.registry.metadata.tables[join.target_table].alias(join.alias)
            self.joins.append(join)
            if join.cardinality == MANY:
                self.fan_out = True

    def column(self, alias: str, name: str):
        return self.aliases[alias].c[name]

    def from_clause(self):
        result = self.base
        for join in self.joins:
            source, target = self.aliases[join.source_alias], self.aliases[join.alias]
            onclause = source.c[join.source_key] == target.c[join.target_key]
            if join.type_column:
                onclause = sa.and_(onclause, target.c[join.type_column] == join.type_value)
            result = result.join(target, onclause, isouter=join.outer)
        return result


class QueryPlanner:
    def __init__(self, registry, config) -> None:
        self.registry = registry
        self.config = config

    @property
    def graph(self):
        return self.registry.graph

    def _resolve_column(self, descriptor: ResourceDescriptor, joins: _Joins, path: str):
        if "." not in path:
            if path not in joins.base.c:
                raise ConfigurationError(f"Unknown field '{path}' on '{descriptor.type_name}'")
            return joins.base.c[path]
        chain = self.graph.build_join_chain(descriptor.type_name, path)
        joins.add(chain.joins)
        return joins.column(chain.final_alias, chain.final_column)

    def _polymorphic_clause(self, descriptor: ResourceDescriptor, joins: _Joins, sfield: SearchFieldDescriptor, value):
        rel = descriptor.relationships.get(sfield.polymorphic_field)
        if not isinstance(rel, Polymorphic):
            raise ConfigurationError(f"'{sfield.polymorphic_field}' of '{descriptor.type_name}' is not a polymorphic relationship")
        branches = []
        for target_type, column_name in sfield.target_fields.items():
            if target_type not in rel.target_types:
                raise ConfigurationError(f"'{target_type}' is not a target of '{descriptor.type_name}.{rel.name}'")
            target = self.registry.compile(target_type)
            alias = f"{descriptor.table_name}__{rel.name}__{target_type}"
            joins.add([JoinSpec(alias, descriptor.table_name, rel.id_field, target.table_name, target.id_field, ONE, outer=True)])
            predicate = apply_operator(joins.column(alias, column_name), sfield.filter_operator, value)
            branches.append(sa.and_(joins.base.c[rel.type_field] == target_type, predicate))
        return sa.or_(*branches)

    def _like_one_of_clause(self, descriptor: ResourceDescriptor, joins: _Joins, sfield: SearchFieldDescriptor, value):
        columns = [self._resolve_column(descriptor, joins, path) for path in sfield.like_one_of]
        terms = [str(value)]
        if sfield.split_by:
            terms = [term.strip() for term in str(value).split(sfield.split_by) if term.strip()] or terms
        groups = [sa.or_(*[column.ilike(f"%{term}%") for column in columns]) for term in terms]
        return sa.and_(*groups) if sfield.match_all else sa.or_(*groups)

    def filter_clause(self, descriptor: ResourceDescriptor, joins: _Joins, name: str, value):
        sfield = descriptor.search_fields.get(name)
        if sfield is None:
            raise ValidationError(
                f"Unknown filter field '{name}' for '{descriptor.type_name}'",
                allowed=sorted(descriptor.search_fields),
                source=f"filter[{name}]",
            )
        if sfield.apply_filter is not None:
            return sfield.apply_filter(joins.base, value)
        if sfield.polymorphic_field:
            return self._polymorphic_clause(descriptor, joins, sfield, value)
        if sfield.like_one_of:
            return self._like_one_of_clause(descriptor, joins, sfield, value)
        column = self._resolve_column(descriptor, joins, sfield.column_path)
        return apply_operator(column, sfield.filter_operator, value)

    def sort_keys(self, descriptor: ResourceDescriptor, joins: _Joins, sort) -> List[SortKey]:
        """
        Resolve the sort tokens, the id field is appended as the final tie-break
        """
        keys = []
        seen = set()
        for token in parse_sort(sort):
            descending = token.startswith("-")
            name = token[1:] if descending else token
            if name not in descriptor.sortable:
                raise ValidationError(
                    f"Unknown sort field '{name}' for '{descriptor.type_name}'", allowed=sorted(descriptor.sortable), source="sort"
                )
            if name in seen:
                continue
            seen.add(name)
            path = name
            if name not in descriptor.fields and name in descriptor.search_fields:
                path = descriptor.search_fields[name].column_path
            if "." in path:
                chain = self.graph.build_join_chain(descriptor.type_name, path)
                if chain.cardinality == MANY:
                    raise ValidationError(f"Can't sort '{descriptor.type_name}' on to-many path '{name}'", source="sort")
                joins.add(chain.joins)
                column = joins.column(chain.final_alias, chain.final_column)
                keys.append(SortKey(token, name, column, descending, SORT_LABEL.format(len(keys)), own=False))
            else:
                keys.append(SortKey(token, name, joins.base.c[path], descending, path))
        if descriptor.id_field not in seen:
            id_field = descriptor.id_field
            keys.append(SortKey(id_field, id_field, joins.base.c[id_field], False, id_field))
        return keys

    def plan(self, type_name: str, filters: Optional[Mapping[str, Any]] = None, sort=None, page=None) -> QueryPlan:
        """
        :param type_name: resource type
        :param filters: search field name => value
        :param sort: list of sort tokens (or a comma separated string), "-" prefix for descending
        :param page: page parameters, see ``normalize_page``
        :return: QueryPlan
        """
        descriptor = self.registry.compile(type_name)
        base = self.registry.table(type_name)
        joins = _Joins(self.registry, base, descriptor.table_name)

        clauses = [self.filter_clause(descriptor, joins, name, value) for name, value in (filters or {}).items()]
        keys = self.sort_keys(descriptor, joins, sort)
        page_request = normalize_page(page, self.config.query_default_limit, self.config.query_max_limit)
        signature = [key.token for key in keys]
        after = decode_cursor(page_request.after, signature) if page_request.after else None

        from_clause = joins.from_clause()
        extra = [key.column.label(key.label) for key in keys if not key.own]
        statement = sa.select(*base.c, *extra).select_from(from_clause)
        if clauses:
            statement = statement.where(*clauses)
        if joins.fan_out:
            # to-many filter joins would repeat the base rows
            statement = statement.distinct()

        count_statement = None
        if page_request.mode == OFFSET and self.config.enable_pagination_counts:
            counted = sa.select(base.c[descriptor.id_field]).select_from(from_clause)
            if clauses:
                counted = counted.where(*clauses)
            if joins.fan_out:
                counted = counted.distinct()
            count_statement = sa.select(sa.func.count()).select_from(counted.subquery())

        if after is not None:
            statement = statement.where(cursor_predicate([(key.column, key.descending) for key in keys], after))
        statement = statement.order_by(*[key.order() for key in keys])
        if page_request.mode == CURSOR:
            statement = statement.limit(page_request.size + 1)
        else:
            statement = statement.limit(page_request.size).offset(page_request.offset)

        relgraph.log.debug(f"plan {type_name}: filters={list(filters or {})} sort={signature} page={page_request}")
        return QueryPlan(type_name, statement, count_statement, page_request, tuple(keys), tuple(joins.joins), joins.fan_out)

    def plan_get(self, type_name: str, object_id) -> QueryPlan:
        """
        :return: QueryPlan selecting the resource with id ``object_id``
        :raises ValidationError: when the id can't be converted to the id column type
        """
        descriptor = self.registry.compile(type_name)
        base = self.registry.table(type_name)
        id_column = base.c[descriptor.id_field]
        statement = sa.select(*base.c).where(id_column == parse_attr(id_column, object_id)).limit(1)
        key = SortKey(descriptor.id_field, descriptor.id_field, id_column, False, descriptor.id_field)
        return QueryPlan(type_name, statement, None, PageRequest(OFFSET, 1), (key,))

    def _window_order(self, target: ResourceDescriptor, table, window: Optional[IncludeWindow]):
        order = []
        for token in window.order_by if window else ():
            descending = token.startswith("-")
            name = token[1:] if descending else token
            if name not in table.c:
                raise ConfigurationError(f"Unknown include orderBy field '{name}' on '{target.type_name}'")
            order.append(table.c[name].desc() if descending else table.c[name].asc())
        order.append(table.c[target.id_field].asc())
        return order

    def key_fetch(self, source_type: str, rel: Relationship, keys: Sequence[Any], target_type: Optional[str] = None) -> KeyFetch:
        """
        Build the batched fetch of the ``rel`` targets of all ``keys``:
        - BelongsTo / Polymorphic: keys are target ids
        - HasMany: keys are source ids, matched with the target foreign key
        - ManyToMany: keys are source ids, matched through the pivot table

        When the relationship has an include window, the rows per parent key are capped
        with ROW_NUMBER() OVER (PARTITION BY parent key ORDER BY ...) at the window limit,
        or at MAX_INCLUDE_LIMIT when that is lower. Fetches without a window are never capped.

        :param target_type: target type of a polymorphic relationship
        """
        target_type = target_type or rel.target_type
        target = self.registry.compile(target_type)
        table = self.registry.table(target_type)
        keys = tuple(keys)
        joins = ()
        from_clause = table
        conditions = []

        if isinstance(rel, (BelongsTo, Polymorphic)):
            parent_key = table.c[target.id_field]
        elif isinstance(rel, HasMany):
            parent_key = table.c[rel.fk_field]
            if rel.via:
                conditions.append(table.c[rel.type_field] == source_type)
        elif isinstance(rel, ManyToMany):
            through_name = self.registry.table_name(rel.through)
            through = self.registry.metadata.tables[through_name]
            from_clause = table.join(through, through.c[rel.other_key] == table.c[target.id_field])
            parent_key = through.c[rel.own_key]
            joins = (JoinSpec(through_name, target.table_name, target.id_field, through_name, rel.other_key, MANY),)
        else:  # pragma: no cover
            raise ConfigurationError(f"Unsupported relationship {rel!r}")

        statement = sa.select(*table.c, parent_key.label(PARENT_KEY)).select_from(from_clause)
        statement = statement.where(parent_key.in_(keys), *conditions)
        window = rel.window if rel.cardinality == MANY else None
        order = self._window_order(target, table, window)
        limit = None
        if window is not None:
            limit = min(window.limit, self.config.max_include_limit)
            row_number = sa.func.row_number().over(partition_by=parent_key, order_by=order).label(ROW_NUMBER)
            ranked = statement.add_columns(row_number).subquery()
            statement = (
                sa.select(*[ranked.c[column.name] for column in table.c], ranked.c[PARENT_KEY])
                .where(ranked.c[ROW_NUMBER] <= limit)
                .order_by(ranked.c[PARENT_KEY], ranked.c[ROW_NUMBER])
            )
        else:
            statement = statement.order_by(parent_key, *order)
        return KeyFetch(target_type, rel.name, table, keys, statement, joins, window, limit)
