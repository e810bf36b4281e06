# Pagination (https://jsonapi.org/format/#fetching-pagination)
#
# Two strategies are supported:
# - offset: page[number] & page[size], or page[offset] & page[limit]
# - cursor: page[size] with an optional page[after], the cursor is an opaque token that encodes
#   the sort key values of the last row of the previous page
#
import base64
import binascii
import datetime
import decimal
import json
import math
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlencode
import sqlalchemy as sa
import relgraph
from .errors import ValidationError
from .jsonapi_types import JSONAPIPaginationMeta

OFFSET = "offset"
CURSOR = "cursor"
PAGE_KEYS = ("number", "size", "offset", "limit", "after")


@dataclass(frozen=True)
class PageRequest:
    mode: str
    size: int
    offset: int = 0
    after: Optional[str] = None

    @property
    def number(self) -> int:
        return self.offset // self.size + 1


def _page_int(page: Mapping[str, Any], key: str, minimum: int) -> int:
    value = page[key]
    try:
        if isinstance(value, bool):
            raise ValueError(value)
        result = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid page[{key}] value '{value}'", source=f"page[{key}]")
    if result < minimum:
        raise ValidationError(f"page[{key}] should be >= {minimum}, got {result}", source=f"page[{key}]")
    return result


def normalize_page(page: Optional[Mapping[str, Any]], default_limit: int, max_limit: int) -> PageRequest:
    """
    Validate the page parameters and determine the pagination strategy:
    page[size] without page[number] (optionally with page[after]) selects cursor pagination,
    the other combinations select offset pagination

    :param page: page parameters, eg. {"number": 2, "size": 10}
    :param default_limit: page size used when none is given
    :param max_limit: larger page sizes are clamped
    """
    page = {key: value for key, value in (page or {}).items() if value is not None or key == "after"}
    for key in page:
        if key not in PAGE_KEYS:
            raise ValidationError(f"Unknown page parameter '{key}'", allowed=PAGE_KEYS, source=f"page[{key}]")

    if "number" in page and ("offset" in page or "limit" in page):
        raise ValidationError("page[number] can't be combined with page[offset] or page[limit]")
    if "size" in page and "limit" in page:
        raise ValidationError("page[size] can't be combined with page[limit]")
    if "after" in page and ("number" in page or "offset" in page):
        raise ValidationError("page[after] can't be combined with offset pagination")

    size_key = "size" if "size" in page else "limit"
    size = _page_int(page, size_key, 1) if size_key in page else default_limit
    if size > max_limit:
        relgraph.log.warning(f"page[{size_key}] {size} exceeds the maximum, using {max_limit}")
        size = max_limit

    if "after" in page or ("size" in page and "number" not in page):
        after = page.get("after") or None
        if after is not None and not isinstance(after, str):
            raise ValidationError(f"Invalid page[after] value '{after}'", source="page[after]")
        return PageRequest(CURSOR, size, after=after)

    if "number" in page:
        offset = (_page_int(page, "number", 1) - 1) * size
    elif "offset" in page:
        offset = _page_int(page, "offset", 0)
    else:
        offset = 0
    return PageRequest(OFFSET, size, offset=offset)


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime.datetime):
        return {"$dt": value.isoformat()}
    if isinstance(value, datetime.date):
        return {"$d": value.isoformat()}
    if isinstance(value, decimal.Decimal):
        return {"$dec": str(value)}
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if "$dt" in value:
            return datetime.datetime.fromisoformat(value["$dt"])
        if "$d" in value:
            return datetime.date.fromisoformat(value["$d"])
        if "$dec" in value:
            return decimal.Decimal(value["$dec"])
        raise ValueError(f"unknown cursor value {value}")
    return value


def encode_cursor(signature: Sequence[str], values: Sequence[Any]) -> str:
    """
    :param signature: the sort tokens the cursor was created for, eg. ["-price", "id"]
    :param values: the sort key values of the last row
    :return: url safe opaque token
    """
    payload = json.dumps({"s": list(signature), "v": [_encode_value(value) for value in values]}, separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode()).decode().rstrip("=")


def decode_cursor(token: str, signature: Sequence[str]) -> Tuple[Any, ...]:
    """
    :return: the sort key values encoded in ``token``
    :raises ValidationError: when the token is malformed or was created for another sort order
    """
    try:
        padded = token + "=" * (-len(token) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
        stored_signature, values = payload["s"], [_decode_value(value) for value in payload["v"]]
    except (binascii.Error, ValueError, UnicodeDecodeError, KeyError, TypeError) as exc:
        raise ValidationError(f"Malformed cursor '{token}': {exc}", source="page[after]")
    if list(stored_signature) != list(signature) or len(values) != len(signature):
        raise ValidationError("Cursor doesn't match the requested sort order", source="page[after]")
    return tuple(values)


def cursor_predicate(keys: Sequence[Tuple[Any, bool]], values: Sequence[Any]):
    """
    Lexicographic tuple comparison that selects the rows after ``values``:

        (a > va) OR (a = va AND b > vb) OR (a = va AND b = vb AND c > vc) ...

    :param keys: (column, descending) pairs, ``<`` is used for descending columns
    :param values: values of the last row, in the same order
    """
    branches = []
    for i, (column, descending) in enumerate(keys):
        equals = [keys[j][0] == values[j] for j in range(i)]
        compare = column < values[i] if descending else column > values[i]
        branches.append(sa.and_(*equals, compare))
    return sa.or_(*branches)


def calculate_pagination_meta(
    page: PageRequest, total: Optional[int] = None, has_more: Optional[bool] = None, next_cursor=None
) -> JSONAPIPaginationMeta:
    """
    offset mode with counts:    {page, pageSize, total, pageCount, hasMore}
    offset mode without counts: {page, pageSize}
    cursor mode:                {pageSize, hasMore, cursor: {next}}
    """
    if page.mode == CURSOR:
        cursor = {"next": next_cursor} if next_cursor else {}
        return {"pageSize": page.size, "hasMore": bool(has_more), "cursor": cursor}

    meta: JSONAPIPaginationMeta = {"page": page.number, "pageSize": page.size}
    if total is not None:
        meta["total"] = total
        meta["pageCount"] = math.ceil(total / page.size)
        meta["hasMore"] = page.offset + page.size < total
    return meta


def pagination_links(url: str, page: PageRequest, query_args: Optional[Mapping[str, Any]] = None, total=None, next_cursor=None):
    """
    :param url: resource collection url
    :param query_args: other query arguments to keep in the links (filter, sort, ...)
    :return: links dict with self, first, prev, next and last links where applicable
    """
    query_args = {k: v for k, v in (query_args or {}).items() if not k.startswith("page[")}

    def get_link(**page_args):
        args = dict(query_args)
        args.update({f"page[{k}]": v for k, v in page_args.items()})
        return f"{url}?{urlencode(args)}"

    if page.mode == CURSOR:
        links = {"self": get_link(size=page.size, after=page.after) if page.after else get_link(size=page.size)}
        if next_cursor:
            links["next"] = get_link(size=page.size, after=next_cursor)
        return links

    links = {"self": get_link(number=page.number, size=page.size), "first": get_link(number=1, size=page.size)}
    if page.number > 1:
        links["prev"] = get_link(number=page.number - 1, size=page.size)
    if total is not None:
        last = max(math.ceil(total / page.size), 1)
        links["last"] = get_link(number=last, size=page.size)
        if page.number < last:
            links["next"] = get_link(number=page.number + 1, size=page.size)
    return links


def split_page(rows: List[Mapping[str, Any]], page: PageRequest) -> Tuple[List[Mapping[str, Any]], bool]:
    """
    cursor queries fetch one row more than the page size to find out whether there is a next page
    """
    if page.mode == CURSOR and len(rows) > page.size:
        return rows[: page.size], True
    return rows, False
