"""
Relationship graph between the registered resource types

Join chains translate a dotted field path (eg. ``"books.publisher.country.name"``) into
the joins needed to filter or sort on the final column.
"""
from typing import List, Optional, Tuple
import relgraph
from .descriptors import (
    MANY,
    ONE,
    BelongsTo,
    HasMany,
    JoinChain,
    JoinSpec,
    ManyToMany,
    Polymorphic,
    Relationship,
    SearchFieldDescriptor,
)
from .errors import ConfigurationError


class RelationshipGraph:
    def __init__(self, registry) -> None:
        self.registry = registry

    def find_relationship(self, type_name: str, segment: str) -> Optional[Relationship]:
        """
        Resolve a path segment: a relationship name, or else the name of the type a relationship points to
        """
        descriptor = self.registry.compile(type_name)
        rel = descriptor.relationships.get(segment)
        if rel is not None:
            return rel
        for rel in descriptor.relationships.values():
            if getattr(rel, "target_type", None) == segment:
                return rel
        return None

    def relationship(self, type_name: str, segment: str) -> Relationship:
        rel = self.find_relationship(type_name, segment)
        if rel is None:
            raise ConfigurationError(f"Unknown relationship '{segment}' on '{type_name}'")
        return rel

    def reciprocal(self, type_name: str, rel: Relationship) -> Optional[Relationship]:
        """
        :return: the relationship on the target type that points back along the same keys, if any
        """
        if isinstance(rel, Polymorphic):
            return None
        target = self.registry.compile(rel.target_type)
        for other in target.relationships.values():
            if isinstance(rel, BelongsTo):
                if isinstance(other, HasMany) and other.target_type == type_name and other.fk_field == rel.fk_field and not other.via:
                    return other
            elif isinstance(rel, HasMany) and rel.via:
                if isinstance(other, Polymorphic) and other.name == rel.via:
                    return other
            elif isinstance(rel, HasMany):
                if isinstance(other, BelongsTo) and other.target_type == type_name and other.fk_field == rel.fk_field:
                    return other
            elif isinstance(rel, ManyToMany):
                if (
                    isinstance(other, ManyToMany)
                    and other.target_type == type_name
                    and other.through == rel.through
                    and other.own_key == rel.other_key
                    and other.other_key == rel.own_key
                ):
                    return other
        return None

    def polymorphic_reciprocal(self, type_name: str, rel: Polymorphic, target_type: str) -> Optional[HasMany]:
        target = self.registry.compile(target_type)
        for other in target.relationships.values():
            if isinstance(other, HasMany) and other.target_type == type_name and other.via == rel.name:
                return other
        return None

    def hop(self, alias: str, source_alias: str, type_name: str, rel: Relationship) -> List[JoinSpec]:
        """
        :return: the joins that join the relationship target as ``alias`` to ``source_alias``
        """
        source = self.registry.compile(type_name)
        if isinstance(rel, BelongsTo):
            target = self.registry.compile(rel.target_type)
            return [JoinSpec(alias, source_alias, rel.fk_field, target.table_name, target.id_field, ONE)]
        if isinstance(rel, HasMany):
            target = self.registry.compile(rel.target_type)
            type_value = type_name if rel.via else None
            return [JoinSpec(alias, source_alias, source.id_field, target.table_name, rel.fk_field, MANY, rel.type_field, type_value)]
        if isinstance(rel, ManyToMany):
            target = self.registry.compile(rel.target_type)
            through_alias = f"{alias}__through"
            return [
                JoinSpec(through_alias, source_alias, source.id_field, self.registry.table_name(rel.through), rel.own_key, MANY),
                JoinSpec(alias, through_alias, rel.other_key, target.table_name, target.id_field, MANY),
            ]
        raise ConfigurationError(f"Polymorphic relationship '{type_name}.{rel.name}' can't be used in a join path")

    def build_join_chain(self, type_name: str, path: str) -> JoinChain:
        """
        :param type_name: type the path starts from
        :param path: dotted path, all segments but the last are relationships, the last one is a column
        :return: JoinChain, its cardinality is "many" as soon as one hop is to-many
        """
        segments = path.split(".")
        if len(segments) < 2 or not all(segments):
            raise ConfigurationError(f"Invalid join path '{path}' on '{type_name}'")
        base_alias = self.registry.compile(type_name).table_name
        joins = []
        cardinality = ONE
        cur_type, cur_alias = type_name, base_alias
        for i, segment in enumerate(segments[:-1]):
            rel = self.find_relationship(cur_type, segment)
            if rel is None:
                raise ConfigurationError(f"Unknown relationship '{segment}' on '{cur_type}' in path '{path}'")
            alias = "__".join([base_alias] + segments[: i + 1])
            hop = self.hop(alias, cur_alias, cur_type, rel)
            if rel.cardinality == MANY:
                cardinality = MANY
            joins.extend(hop)
            cur_type, cur_alias = rel.target_type, alias

        column = segments[-1]
        final = self.registry.compile(cur_type)
        if column not in final.fields:
            raise ConfigurationError(f"Unknown field '{column}' on '{cur_type}' in path '{path}'")
        relgraph.log.debug(f"join chain {type_name}:{path} => {[join.alias for join in joins]} ({cardinality})")
        return JoinChain(tuple(joins), cur_alias, column, cur_type, cardinality)

    def analyze_required_indexes(self, type_name: str, search_fields=None) -> List[Tuple[str, str]]:
        """
        :return: (table, column) pairs that should be indexed to support the search fields of ``type_name``,
                 this includes the columns of the tables reached through cross-table paths
        """
        descriptor = self.registry.compile(type_name)
        if search_fields is None:
            search_fields = descriptor.search_fields
        result = []

        def add(pair):
            if pair not in result:
                result.append(pair)

        sfield: SearchFieldDescriptor
        for sfield in search_fields.values():
            if sfield.apply_filter is not None:
                continue
            if sfield.polymorphic_field:
                rel = descriptor.relationships.get(sfield.polymorphic_field)
                if isinstance(rel, Polymorphic):
                    add((descriptor.table_name, rel.type_field))
                    add((descriptor.table_name, rel.id_field))
                for target_type, column in sfield.target_fields.items():
                    add((self.registry.table_name(target_type), column))
                continue
            for path in sfield.like_one_of or (sfield.column_path,):
                if "." not in path:
                    add((descriptor.table_name, path))
                    continue
                chain = self.build_join_chain(type_name, path)
                add((self.registry.compile(chain.final_type).table_name, chain.final_column))
        return result
