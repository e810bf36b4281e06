"""
Schema compilation: registration input => ResourceDescriptor

compile steps:
    clone => split computed fields => default belongsTo types => pivot detection
    => enrichment callbacks => search schema (shorthand, then explicit overlay)
    => index marking => relationships => getter/setter ordering
"""
import copy
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import relgraph
from .descriptors import (
    BelongsTo,
    FieldDescriptor,
    HasMany,
    IncludeWindow,
    ManyToMany,
    Polymorphic,
    ResourceDescriptor,
    SearchFieldDescriptor,
)
from .errors import ConfigurationError

OPERATORS = ("=", "!=", "<", "<=", ">", ">=", "like", "contains", "startswith", "endswith", "in", "between")
FIELD_TYPES = ("string", "text", "number", "integer", "id", "boolean", "date", "datetime", "decimal", "json")
TEXT_TYPES = ("string", "text")

PIVOT_MIN_BELONGS_TO = 2
PIVOT_MIN_RATIO = 0.4

# registration key => SearchFieldDescriptor attribute
SEARCH_KEYS = {
    "type": "type",
    "filterOperator": "filter_operator",
    "actualField": "actual_field",
    "likeOneOf": "like_one_of",
    "oneOf": "like_one_of",
    "splitBy": "split_by",
    "matchAll": "match_all",
    "applyFilter": "apply_filter",
    "polymorphicField": "polymorphic_field",
    "targetFields": "target_fields",
    "indexed": "indexed",
}

Schema = Dict[str, Dict[str, Any]]
Enricher = Callable[[Schema], Schema]


def clone_schema(schema: Mapping[str, Mapping[str, Any]]) -> Schema:
    """
    Deep copy the registered schema, callables (getters, compute, ...) are shared
    """
    return {name: copy.deepcopy(dict(definition)) for name, definition in schema.items()}


def split_computed(type_name: str, schema: Schema) -> Tuple[Schema, Schema]:
    stored, computed = {}, {}
    for name, definition in schema.items():
        if definition.get("computed") or "compute" in definition:
            if not definition.get("type"):
                raise ConfigurationError(f"Computed field '{type_name}.{name}' must declare a type")
            if not callable(definition.get("compute")):
                raise ConfigurationError(f"Computed field '{type_name}.{name}' has a non-callable compute value")
            computed[name] = definition
        else:
            stored[name] = definition
    return stored, computed


def default_belongs_to_types(schema: Schema) -> Schema:
    for definition in schema.values():
        if definition.get("belongsTo") and not definition.get("type"):
            definition["type"] = "id"
    return schema


def detect_pivot(schema: Mapping[str, Mapping[str, Any]], id_field: str = "id") -> Tuple[bool, List[Tuple[str, Dict[str, Any]]]]:
    """
    A resource is treated as a pivot (join) table when it has at least two belongsTo fields
    that make up at least 40% of its non-id fields.

    :return: (is_pivot, [(field name, changes), ...]), the changes make the belongsTo fields searchable
    """
    non_id = [name for name in schema if name != id_field]
    belongs_to = [name for name in non_id if schema[name].get("belongsTo")]
    if len(belongs_to) < PIVOT_MIN_BELONGS_TO:
        return False, []
    if non_id and len(belongs_to) / len(non_id) < PIVOT_MIN_RATIO:
        return False, []
    return True, [(name, {"search": True}) for name in belongs_to if not schema[name].get("search")]


def apply_mutations(schema: Schema, mutations: Iterable[Tuple[str, Mapping[str, Any]]]) -> Schema:
    for name, changes in mutations:
        schema[name].update(changes)
    return schema


def apply_enrichers(type_name: str, schema: Schema, enrichers: Sequence[Enricher]) -> Schema:
    for enricher in enrichers:
        schema = enricher(schema)
        if not isinstance(schema, dict):
            raise ConfigurationError(f"Enricher {enricher!r} did not return a schema for '{type_name}'")
    return schema


def _search_field(type_name: str, name: str, config: Mapping[str, Any]) -> SearchFieldDescriptor:
    kwargs = {}
    for key, value in config.items():
        if key not in SEARCH_KEYS:
            raise ConfigurationError(f"Unknown search option '{key}' for '{type_name}.{name}'")
        kwargs[SEARCH_KEYS[key]] = value

    ftype = kwargs.setdefault("type", "string")
    if "filter_operator" not in kwargs:
        kwargs["filter_operator"] = "like" if ftype in TEXT_TYPES and not kwargs.get("like_one_of") else "="
    if kwargs["filter_operator"] not in OPERATORS:
        raise ConfigurationError(f"Invalid filterOperator '{kwargs['filter_operator']}' for '{type_name}.{name}'")
    if "like_one_of" in kwargs:
        if isinstance(kwargs["like_one_of"], str) or not kwargs["like_one_of"]:
            raise ConfigurationError(f"likeOneOf of '{type_name}.{name}' should be a list of fields")
        kwargs["like_one_of"] = tuple(kwargs["like_one_of"])
    if kwargs.get("apply_filter") is not None and not callable(kwargs["apply_filter"]):
        raise ConfigurationError(f"applyFilter of '{type_name}.{name}' is not callable")
    if kwargs.get("polymorphic_field") and not kwargs.get("target_fields"):
        raise ConfigurationError(f"Polymorphic search field '{type_name}.{name}' requires targetFields")
    return SearchFieldDescriptor(name=name, **kwargs)


def build_search_schema(
    type_name: str, schema: Mapping[str, Mapping[str, Any]], explicit: Optional[Mapping[str, Mapping[str, Any]]] = None
) -> Dict[str, SearchFieldDescriptor]:
    """
    Merge the ``search`` markers of the schema fields with the explicit search schema.
    Explicit entries replace the shorthand entries with the same name.

    shorthand forms:
        "name": {"type": "string", "search": True}
        "country_id": {"belongsTo": "countries", "as": "country", "search": True}  => filter[country]
        "name": {"type": "string", "search": {"filterOperator": "like"}}
        "published": {"type": "date", "search": {"published_after": {"filterOperator": ">="},
                                                 "published_before": {"filterOperator": "<="}}}
    """
    result = {}
    for name, definition in schema.items():
        search = definition.get("search")
        if not search:
            continue
        ftype = definition.get("type", "string")
        if search is True:
            # belongsTo fields are filtered by their relationship name, eg. filter[country]
            filter_name = definition.get("as") if definition.get("belongsTo") and definition.get("as") else name
            actual_field = name if filter_name != name else None
            result[filter_name] = SearchFieldDescriptor(name=filter_name, type=ftype, filter_operator="=", actual_field=actual_field)
        elif isinstance(search, Mapping) and all(isinstance(value, Mapping) for value in search.values()):
            # several filters on the same column
            for filter_name, config in search.items():
                result[filter_name] = _search_field(type_name, filter_name, {"type": ftype, "actualField": name, **config})
        elif isinstance(search, Mapping):
            result[name] = _search_field(type_name, name, {"type": ftype, "filterOperator": "=", **search})
        else:
            raise ConfigurationError(f"Invalid search value for '{type_name}.{name}': {search!r}")

    for name, config in (explicit or {}).items():
        result[name] = _search_field(type_name, name, config)
    return result


def own_search_columns(search_fields: Mapping[str, SearchFieldDescriptor]) -> List[str]:
    """
    :return: names of the own columns used for filtering
    """
    result = []
    for sfield in search_fields.values():
        if sfield.apply_filter is not None:
            continue
        if sfield.polymorphic_field:
            continue
        for path in sfield.like_one_of or (sfield.column_path,):
            if "." not in path and path not in result:
                result.append(path)
    return result


def topological_sort(type_name: str, kind: str, dependencies: Mapping[str, Sequence[str]], known: Iterable[str]) -> Tuple[str, ...]:
    """
    Order the fields so every field comes after the fields it depends on.
    Dependencies on fields without a getter/setter of their own don't constrain the order.

    :param kind: "getter" or "setter", used in error messages
    :param dependencies: field name => names of the fields it runs after
    :param known: all field names of the resource
    """
    known = set(known)
    for name, deps in dependencies.items():
        for dep in deps:
            if dep not in known:
                raise ConfigurationError(f"The {kind} of '{type_name}.{name}' depends on unknown field '{dep}'")

    order = []
    state = {}

    def visit(name, trail):
        if state.get(name) == "done":
            return
        if state.get(name) == "visiting":
            cycle = " -> ".join(trail[trail.index(name) :] + [name])
            raise ConfigurationError(f"Cyclic {kind} dependency in '{type_name}': {cycle}")
        state[name] = "visiting"
        for dep in dependencies[name]:
            if dep in dependencies:
                visit(dep, trail + [name])
        state[name] = "done"
        order.append(name)

    for name in dependencies:
        visit(name, [])
    return tuple(order)


def _include_window(type_name: str, rel_name: str, config: Optional[Mapping[str, Any]], max_limit: int) -> Optional[IncludeWindow]:
    if not config:
        return None
    limit = config.get("limit")
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ConfigurationError(f"include.limit of '{type_name}.{rel_name}' must be a positive number")
    if limit > max_limit:
        raise ConfigurationError(f"include.limit of '{type_name}.{rel_name}' exceeds the maximum of {max_limit}")
    order_by = config.get("orderBy", [])
    if not isinstance(order_by, (list, tuple)):
        raise ConfigurationError(f"include.orderBy of '{type_name}.{rel_name}' must be a list")
    strategy = config.get("strategy", "window")
    if strategy != "window":
        raise ConfigurationError(f"Unsupported include strategy '{strategy}' for '{type_name}.{rel_name}'")
    return IncludeWindow(limit=limit, order_by=tuple(order_by), strategy=strategy)


def _check_window_order(type_name: str, rel_name: str, window: Optional[IncludeWindow], target_reg) -> None:
    if window is None:
        return
    columns = {name for name, definition in target_reg.schema.items() if "compute" not in definition}
    columns.add(target_reg.id_field)
    for token in window.order_by:
        name = token[1:] if token.startswith("-") else token
        if name not in columns:
            raise ConfigurationError(
                f"Unknown include orderBy field '{name}' of '{type_name}.{rel_name}', '{target_reg.type_name}' has no such column"
            )


def build_relationships(type_name, schema, relationships, registrations, max_limit):
    """
    Build the relationship descriptors from the belongsTo fields and the relationships map:

        "country_id": {"belongsTo": "countries", "as": "country"}

        "books": {"hasMany": "books", "foreignKey": "country_id"}
        "comments": {"hasMany": "comments", "via": "commentable"}
        "authors": {"manyToMany": "authors", "through": "book_authors", "foreignKey": "book_id", "otherKey": "author_id"}
        "commentable": {"belongsToPolymorphic": ["books", "authors"], "typeField": "commentable_type", "idField": "commentable_id"}
    """

    def check_target(rel_name, target):
        if target not in registrations:
            raise ConfigurationError(f"Relationship '{type_name}.{rel_name}' targets unknown resource type '{target}'")
        return registrations[target]

    result = {}
    for name, definition in schema.items():
        target = definition.get("belongsTo")
        if not target:
            continue
        alias = definition.get("as")
        if not alias:
            raise ConfigurationError(f"belongsTo field '{type_name}.{name}' requires an 'as' relationship name")
        check_target(alias, target)
        result[alias] = BelongsTo(alias, target, name, window=_include_window(type_name, alias, definition.get("include"), max_limit))

    for name, definition in (relationships or {}).items():
        if name in result:
            raise ConfigurationError(f"Duplicate relationship '{type_name}.{name}'")
        window = _include_window(type_name, name, definition.get("include"), max_limit)
        if "hasMany" in definition:
            target = definition["hasMany"]
            target_reg = check_target(name, target)
            via = definition.get("via")
            if via:
                poly = (target_reg.relationships or {}).get(via) or {}
                if "belongsToPolymorphic" not in poly:
                    raise ConfigurationError(f"'{type_name}.{name}' is via '{via}', which is not a polymorphic relationship of '{target}'")
                _check_window_order(type_name, name, window, target_reg)
                result[name] = HasMany(name, target, poly["idField"], via=via, type_field=poly["typeField"], window=window)
                continue
            fk_field = definition.get("foreignKey")
            if not fk_field or fk_field not in target_reg.schema:
                raise ConfigurationError(f"hasMany '{type_name}.{name}' requires a foreignKey field of '{target}', got {fk_field!r}")
            _check_window_order(type_name, name, window, target_reg)
            result[name] = HasMany(name, target, fk_field, window=window)
        elif "manyToMany" in definition:
            target = definition["manyToMany"]
            _check_window_order(type_name, name, window, check_target(name, target))
            missing = [key for key in ("through", "foreignKey", "otherKey") if not definition.get(key)]
            if missing:
                raise ConfigurationError(f"manyToMany '{type_name}.{name}' is missing {', '.join(missing)}")
            through = definition["through"]
            if through in registrations:
                through = registrations[through].table_name or through
            result[name] = ManyToMany(name, target, through, definition["foreignKey"], definition["otherKey"], window=window)
        elif "belongsToPolymorphic" in definition:
            targets = tuple(definition["belongsToPolymorphic"])
            for target in targets:
                check_target(name, target)
            type_field, id_field = definition.get("typeField"), definition.get("idField")
            if type_field not in schema or id_field not in schema:
                raise ConfigurationError(f"Polymorphic '{type_name}.{name}' requires typeField and idField columns")
            result[name] = Polymorphic(name, targets, type_field, id_field, window=window)
        else:
            raise ConfigurationError(f"Unknown relationship kind for '{type_name}.{name}': {sorted(definition)}")
    return result


def _field_descriptor(type_name: str, name: str, definition: Mapping[str, Any], indexed: bool) -> FieldDescriptor:
    ftype = definition.get("type", "string")
    if ftype not in FIELD_TYPES:
        raise ConfigurationError(f"Unknown type '{ftype}' for '{type_name}.{name}'")
    for hook in ("getter", "setter"):
        if definition.get(hook) is not None and not callable(definition[hook]):
            raise ConfigurationError(f"The {hook} of '{type_name}.{name}' is not callable")
    return FieldDescriptor(
        name=name,
        type=ftype,
        belongs_to=definition.get("belongsTo"),
        as_=definition.get("as"),
        indexed=bool(definition.get("indexed")) or indexed,
        computed="compute" in definition,
        getter=definition.get("getter"),
        setter=definition.get("setter"),
        compute=definition.get("compute"),
        run_getter_after=tuple(definition.get("runGetterAfter", ())),
        run_setter_after=tuple(definition.get("runSetterAfter", ())),
        default=definition.get("default"),
        hidden=bool(definition.get("hidden")),
        normally_hidden=bool(definition.get("normallyHidden")),
    )


def compile_resource(registration, registrations, enrichers=(), max_limit=100) -> ResourceDescriptor:
    """
    Compile a registered resource.
    This is a pure function of the registration input, it can be called again safely.

    :param registration: ResourceRegistration of the type to compile
    :param registrations: all registrations (type name => ResourceRegistration)
    :param enrichers: registry-wide enrichment callbacks, they run before the registration's own
    :param max_limit: maximum per-parent include window limit
    """
    type_name = registration.type_name
    id_field = registration.id_field
    schema = clone_schema(registration.schema)
    schema, computed = split_computed(type_name, schema)
    schema = default_belongs_to_types(schema)

    if registration.pivot is None:
        is_pivot, mutations = detect_pivot(schema, id_field)
    else:
        is_pivot = registration.pivot
        mutations = detect_pivot(schema, id_field)[1] if is_pivot else []
    schema = apply_mutations(schema, mutations)
    if is_pivot:
        relgraph.log.debug(f"'{type_name}' is a pivot table, searchable: {[name for name, _ in mutations]}")

    schema = apply_enrichers(type_name, schema, list(enrichers) + list(registration.enrichers))
    schema, extra_computed = split_computed(type_name, schema)
    computed.update(extra_computed)

    search_fields = build_search_schema(type_name, schema, registration.search_schema)
    index_columns = own_search_columns(search_fields)
    for column in index_columns:
        if column not in schema and column != id_field:
            raise ConfigurationError(f"Search schema of '{type_name}' refers to unknown field '{column}'")

    fields = {}
    if id_field not in schema:
        fields[id_field] = FieldDescriptor(name=id_field, type="id")
    for name, definition in schema.items():
        fields[name] = _field_descriptor(type_name, name, definition, name in index_columns and name != id_field)
    computed_fields = {name: _field_descriptor(type_name, name, definition, False) for name, definition in computed.items()}

    relationships = build_relationships(type_name, schema, registration.relationships, registrations, max_limit)

    known = list(fields) + list(computed_fields)
    getter_order = topological_sort(
        type_name, "getter", {name: f.run_getter_after for name, f in fields.items() if f.getter is not None}, known
    )
    setter_order = topological_sort(
        type_name, "setter", {name: f.run_setter_after for name, f in fields.items() if f.setter is not None}, known
    )

    if registration.sortable is not None:
        sortable = tuple(registration.sortable)
        for name in sortable:
            if "." not in name and name not in fields and name not in search_fields:
                raise ConfigurationError(f"Sortable field '{name}' of '{type_name}' is not a field")
    else:
        sortable = tuple(name for name, fdesc in fields.items() if not fdesc.hidden)

    return ResourceDescriptor(
        type_name=type_name,
        table_name=registration.table_name or type_name,
        id_field=id_field,
        fields=fields,
        computed=computed_fields,
        relationships=relationships,
        search_fields=search_fields,
        sortable=sortable,
        getter_order=getter_order,
        setter_order=setter_order,
        is_pivot=is_pivot,
    )


def apply_setters(descriptor: ResourceDescriptor, attributes: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Run the setters of a resource on incoming attributes, in dependency order.
    Used by writers before the attributes are stored, setters receive ``(value, attributes)``
    """
    result = dict(attributes)
    for name in descriptor.setter_order:
        if name in result:
            result[name] = descriptor.fields[name].setter(result[name], result)
    return result
