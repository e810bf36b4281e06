"""
Parse the jsonapi query arguments of a request (https://jsonapi.org/format/#fetching)

    /books?filter[title]=Dune&sort=-year,title&page[number]=2&page[size]=10&include=authors&fields[books]=title

The parsed arguments can be passed to the engine:

    document = await engine.query("books", **request.query_params())
"""
import re
from flask import Request

ARG_RE = re.compile(r"^(filter|fields|page)\[([\w.]+)\]$")


# pylint: disable=too-many-ancestors
class RelGraphRequest(Request):
    """
    Parse the jsonapi related request arguments:
    - filter[<field>]
    - fields[<type>]
    - page[number], page[size], page[offset], page[limit], page[after]
    - sort
    - include
    """

    jsonapi_content_types = ["application/json", "application/vnd.api+json"]

    def __init__(self, *args, **kwargs):
        """
        constructor
        """
        super().__init__(*args, **kwargs)
        self.filters = {}
        self.fields = {}
        self.page = {}
        self.sort = []
        self.includes = []
        self.parse_jsonapi_args()

    @property
    def is_jsonapi(self):
        if not isinstance(self.content_type, str):
            return False
        return self.content_type.split(";")[0] in self.jsonapi_content_types

    def parse_jsonapi_args(self):
        for arg, val in self.args.items():
            if arg == "sort":
                self.sort = [token for token in val.split(",") if token]
                continue
            if arg == "include":
                self.includes = [path for path in val.split(",") if path]
                continue
            match = ARG_RE.match(arg)
            if not match:
                continue
            kind, name = match.groups()
            if kind == "filter":
                self.filters[name] = val
            elif kind == "fields":
                self.fields[name] = [field for field in val.split(",") if field]
            else:
                self.page[name] = val

    def query_params(self):
        """
        :return: keyword arguments for ``ResourceEngine.query``
        """
        return {
            "filters": dict(self.filters),
            "sort": list(self.sort),
            "page": dict(self.page),
            "include": list(self.includes),
            "fields": dict(self.fields),
            "query_args": dict(self.args.items()),
        }

