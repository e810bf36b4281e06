from typing import Any, Optional, TypedDict, Union


class JSONAPIResourceIdentifier(TypedDict):
    id: str
    type: str


class JSONAPIRelationship(TypedDict, total=False):
    data: Union[JSONAPIResourceIdentifier, list[JSONAPIResourceIdentifier], None]
    links: dict[str, Any]


class JSONAPIResourceObject(JSONAPIResourceIdentifier, total=False):
    attributes: dict[str, Any]
    relationships: dict[str, JSONAPIRelationship]
    meta: dict[str, Any]
    links: dict[str, Any]


JSONAPIData = Union[JSONAPIResourceObject, list[JSONAPIResourceObject], None]


class JSONAPIPaginationMeta(TypedDict, total=False):
    page: int
    pageSize: int
    total: int
    pageCount: int
    hasMore: bool
    cursor: dict[str, Optional[str]]


class JSONAPIResponseDocument(TypedDict, total=False):
    data: JSONAPIData
    meta: dict[str, Any]
    errors: list[dict[str, Any]]
    included: list[JSONAPIResourceObject]
    links: dict[str, Any]
    jsonapi: dict[str, str]
