# JSON:API document assembly
#
# resource object pipeline:
#   stored attributes => getters (dependency order) => relationship linkage => computed attributes => sparse fieldsets
#
import inspect
from typing import Any, Dict, List, Mapping, Optional
import relgraph
from .descriptors import BelongsTo, Polymorphic
from .errors import ValidationError
from .includes import IncludeResult
from .jsonapi_types import JSONAPIResourceIdentifier, JSONAPIResourceObject, JSONAPIResponseDocument


def resource_identifier(type_name: str, object_id: Any) -> JSONAPIResourceIdentifier:
    return {"type": type_name, "id": str(object_id)}


class DocumentAssembler:
    def __init__(self, registry, config) -> None:
        self.registry = registry
        self.config = config

    def validate_fields(self, fields: Optional[Mapping[str, Any]]) -> Dict[str, List[str]]:
        """
        Validate the sparse fieldsets, eg. {"books": ["title", "year"]} or {"books": "title,year"}

        :return: type name => list of attribute names
        """
        result = {}
        for type_name, names in (fields or {}).items():
            if type_name not in self.registry:
                raise ValidationError(
                    f"Unknown type '{type_name}' in sparse fieldset", allowed=sorted(self.registry.type_names), source=f"fields[{type_name}]"
                )
            if isinstance(names, str):
                names = names.split(",")
            names = [name.strip() for name in names if name.strip()]
            allowed = self.registry.compile(type_name).attribute_names
            for name in names:
                if name not in allowed:
                    raise ValidationError(
                        f"Unknown field '{name}' in sparse fieldset of '{type_name}'", allowed=allowed, source=f"fields[{type_name}]"
                    )
            result[type_name] = names
        return result

    async def resource_object(
        self, type_name: str, row: Mapping[str, Any], result: Optional[IncludeResult] = None, fields: Optional[Mapping[str, List[str]]] = None
    ) -> JSONAPIResourceObject:
        descriptor = self.registry.compile(type_name)
        object_id = str(row[descriptor.id_field])
        hidden = descriptor.hidden_fields

        attributes = {name: row.get(name) for name in descriptor.fields if name not in hidden}
        for name in descriptor.getter_order:
            if name in attributes:
                attributes[name] = descriptor.fields[name].getter(attributes[name], row)

        linkage = result.linkage.get((type_name, object_id), {}) if result is not None else {}
        relationships = {}
        for name, rel in descriptor.relationships.items():
            if isinstance(rel, BelongsTo):
                fk = row.get(rel.fk_field)
                data = None if fk is None else resource_identifier(rel.target_type, fk)
            elif isinstance(rel, Polymorphic):
                target_type, target_id = row.get(rel.type_field), row.get(rel.id_field)
                data = None if target_type is None or target_id is None else resource_identifier(target_type, target_id)
            elif name in linkage:
                data = [resource_identifier(*key) for key in linkage[name]]
            else:
                # to-many relationships are only serialized when included
                continue
            relationships[name] = {"data": data}

        for name, fdesc in descriptor.computed.items():
            if fdesc.hidden:
                continue
            value = fdesc.compute(dict(attributes))
            if inspect.isawaitable(value):
                value = await value
            attributes[name] = value

        # computed fields see the normally hidden attributes, the document only shows them on request
        visible = fields[type_name] if fields and type_name in fields else descriptor.default_attribute_names
        attributes = {name: value for name, value in attributes.items() if name in visible}

        resource: JSONAPIResourceObject = {"type": type_name, "id": object_id, "attributes": attributes, "relationships": relationships}
        if self.config.url_prefix:
            resource["links"] = {"self": f"{self.config.url_prefix}/{type_name}/{object_id}"}
        return resource

    async def assemble(
        self,
        primary_rows,
        type_name: str,
        result: Optional[IncludeResult] = None,
        fields: Optional[Mapping[str, List[str]]] = None,
        single: bool = False,
        meta: Optional[Dict[str, Any]] = None,
        links: Optional[Dict[str, str]] = None,
    ) -> JSONAPIResponseDocument:
        """
        :param primary_rows: primary data rows
        :param result: include resolution result, ``included`` is only added to the document when it's given
        :param single: the primary data is a single resource object instead of a list
        :return: jsonapi document
        """
        data = [await self.resource_object(type_name, row, result, fields) for row in primary_rows]
        document: JSONAPIResponseDocument = {"data": (data[0] if data else None) if single else data}
        if result is not None:
            document["included"] = [await self.resource_object(key[0], result.records[key], result, fields) for key in result.included]
            relgraph.log.debug(f"{type_name}: {len(data)} resources, {len(result.included)} included")
        document["meta"] = meta or {}
        if links:
            document["links"] = links
        document["jsonapi"] = {"version": "1.0"}
        return document
