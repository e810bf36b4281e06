"""
Include resolution (https://jsonapi.org/format/#fetching-includes)

The include paths are merged into a tree and resolved breadth first: for every level of the tree
the related rows of all records of that level are fetched with one query per relationship.
Every fetched record is stored once, keyed by (type, id).
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple
import relgraph
from .descriptors import MANY, BelongsTo, Polymorphic, Relationship
from .errors import ValidationError
from .planner import PARENT_KEY

Key = Tuple[str, str]


@dataclass
class IncludeNode:
    """
    One relationship hop of the include tree.
    ``relationships`` maps the source types to the relationship followed from that type,
    there's more than one source type below a polymorphic relationship.
    """

    name: str
    path: str
    depth: int
    relationships: Dict[str, Relationship] = field(default_factory=dict)
    children: Dict[str, "IncludeNode"] = field(default_factory=dict)

    @property
    def target_types(self) -> Tuple[str, ...]:
        result = []
        for rel in self.relationships.values():
            for target_type in rel.target_types if isinstance(rel, Polymorphic) else (rel.target_type,):
                if target_type not in result:
                    result.append(target_type)
        return tuple(result)

    def walk(self):
        for child in self.children.values():
            yield child
            yield from child.walk()


@dataclass
class IncludeResult:
    records: Dict[Key, Mapping[str, Any]]
    primary: Set[Key]
    included: List[Key] = field(default_factory=list)
    linkage: Dict[Key, Dict[str, Any]] = field(default_factory=dict)

    def link_one(self, source: Key, name: str, target: Optional[Key]) -> None:
        self.linkage.setdefault(source, {})[name] = target

    def link_many(self, source: Key, name: str, target: Optional[Key] = None) -> None:
        refs = self.linkage.setdefault(source, {}).setdefault(name, [])
        if target is not None and target not in refs:
            refs.append(target)

    def targets(self, source: Key, name: str) -> List[Key]:
        refs = self.linkage.get(source, {}).get(name)
        if refs is None:
            return []
        return refs if isinstance(refs, list) else [refs]


def parse_include(include) -> List[str]:
    if not include:
        return []
    if isinstance(include, str):
        include = include.split(",")
    result = []
    for path in include:
        path = path.strip()
        if path and path not in result:
            result.append(path)
    return result


class IncludeResolver:
    def __init__(self, registry, storage, planner, config) -> None:
        self.registry = registry
        self.storage = storage
        self.planner = planner
        self.config = config

    @property
    def graph(self):
        return self.registry.graph

    def build_tree(self, type_name: str, include, max_depth: Optional[int] = None) -> IncludeNode:
        """
        Validate the include paths and merge them into a tree, paths sharing a prefix share the nodes

        :raises ValidationError: for paths deeper than ``max_depth`` and for unknown relationships
        """
        if max_depth is None:
            max_depth = self.config.include_depth_limit
        paths = parse_include(include)
        for path in paths:
            depth = len(path.split("."))
            if depth > max_depth:
                raise ValidationError(f"Include path '{path}' exceeds maximum depth of {max_depth}", source="include")

        root = IncludeNode("", "", 0)
        for path in paths:
            node = root
            for depth, segment in enumerate(path.split("."), start=1):
                child = node.children.get(segment)
                if child is None:
                    source_types = node.target_types if node.depth else (type_name,)
                    rels = {}
                    for source_type in source_types:
                        rel = self.graph.find_relationship(source_type, segment)
                        if rel is not None:
                            rels[source_type] = rel
                    if not rels:
                        allowed = sorted({name for t in source_types for name in self.registry.compile(t).relationships})
                        raise ValidationError(
                            f"Unknown relationship '{segment}' in include path '{path}'", allowed=allowed, source="include"
                        )
                    child = IncludeNode(segment, ".".join(path.split(".")[:depth]), depth, rels)
                    node.children[segment] = child
                node = child
        return root

    def key(self, type_name: str, row: Mapping[str, Any]) -> Key:
        return type_name, str(row[self.registry.compile(type_name).id_field])

    def _add(self, result: IncludeResult, type_name: str, row: Mapping[str, Any]) -> Key:
        row = {name: value for name, value in row.items() if not name.startswith("_rg_")}
        key = self.key(type_name, row)
        if key not in result.records:
            result.records[key] = row
            if key not in result.primary:
                result.included.append(key)
        return key

    async def _resolve_to_one(self, source_type, rel, source_keys, result, edges) -> None:
        wanted: Dict[str, Dict[Key, Any]] = {}
        for source in source_keys:
            row = result.records[source]
            if isinstance(rel, BelongsTo):
                target_type, target_id = rel.target_type, row.get(rel.fk_field)
            else:
                target_type, target_id = row.get(rel.type_field), row.get(rel.id_field)
                if target_type is not None and target_type not in rel.target_types:
                    relgraph.log.warning(f"{source}: '{target_type}' is not a target type of '{rel.name}'")
                    target_type = None
            if target_type is None or target_id is None:
                result.link_one(source, rel.name, None)
                continue
            target = (target_type, str(target_id))
            result.link_one(source, rel.name, target)
            edges.append((source, rel, target))
            if target not in result.records:
                wanted.setdefault(target_type, {})[target] = target_id

        for target_type, keys in wanted.items():
            fetch = self.planner.key_fetch(source_type, rel, list(keys.values()), target_type)
            for row in await self.storage.fetch_by_keys(fetch):
                self._add(result, target_type, row)

    async def _resolve_to_many(self, source_type, rel, source_keys, result, edges) -> None:
        id_field = self.registry.compile(source_type).id_field
        parent_ids = {}
        for source in source_keys:
            result.link_many(source, rel.name)
            parent_ids.setdefault(result.records[source][id_field], source)

        fetch = self.planner.key_fetch(source_type, rel, list(parent_ids))
        for row in await self.storage.fetch_by_keys(fetch):
            source = (source_type, str(row[PARENT_KEY]))
            target = self._add(result, rel.target_type, row)
            result.link_many(source, rel.name, target)
            edges.append((source, rel, target))

    def _back_fill(self, root: IncludeNode, result: IncludeResult, edges) -> None:
        """
        Add the reciprocal linkage of every resolved edge, when the reciprocal relationship was requested too
        """
        requested = {(source_type, rel.name) for node in root.walk() for source_type, rel in node.relationships.items()}
        for source, rel, target in edges:
            if target not in result.records:
                continue
            if isinstance(rel, Polymorphic):
                reciprocal = self.graph.polymorphic_reciprocal(source[0], rel, target[0])
            else:
                reciprocal = self.graph.reciprocal(source[0], rel)
            if reciprocal is None or (target[0], reciprocal.name) not in requested:
                continue
            if reciprocal.cardinality == MANY:
                result.link_many(target, reciprocal.name, source)
            elif result.linkage.get(target, {}).get(reciprocal.name) is None:
                result.link_one(target, reciprocal.name, source)

    async def resolve(self, primary_rows, type_name: str, tree: IncludeNode) -> IncludeResult:
        """
        :param primary_rows: rows of the primary data
        :param type_name: type of the primary rows
        :param tree: validated include tree, see ``build_tree``
        :return: IncludeResult with the included records (never primary records) and the relationship linkage
        """
        records = {}
        for row in primary_rows:
            records[self.key(type_name, row)] = row
        result = IncludeResult(records=records, primary=set(records))
        edges = []

        frontier = [(child, list(records)) for child in tree.children.values()]
        while frontier:
            groups: Dict[Tuple[str, str], Dict[str, Any]] = {}
            for node, source_keys in frontier:
                for source in source_keys:
                    rel = node.relationships.get(source[0])
                    if rel is None:
                        continue
                    group = groups.setdefault((source[0], rel.name), {"rel": rel, "sources": {}})
                    group["sources"][source] = None

            for (source_type, _), group in groups.items():
                rel, source_keys = group["rel"], list(group["sources"])
                relgraph.log.debug(f"include {source_type}.{rel.name} for {len(source_keys)} records")
                if rel.cardinality == MANY:
                    await self._resolve_to_many(source_type, rel, source_keys, result, edges)
                else:
                    await self._resolve_to_one(source_type, rel, source_keys, result, edges)

            next_frontier = []
            for node, source_keys in frontier:
                targets = {}
                for source in source_keys:
                    rel = node.relationships.get(source[0])
                    if rel is None:
                        continue
                    for target in result.targets(source, rel.name):
                        if target in result.records:
                            targets[target] = None
                for child in node.children.values():
                    next_frontier.append((child, list(targets)))
            frontier = next_frontier

        self._back_fill(tree, result, edges)
        return result

    async def resolve_includes(self, primary_rows, type_name: str, include, max_depth: Optional[int] = None) -> IncludeResult:
        """
        Validate the include paths and resolve them for ``primary_rows``
        """
        tree = self.build_tree(type_name, include, max_depth)
        return await self.resolve(primary_rows, type_name, tree)
