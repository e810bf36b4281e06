# relgraph to json encoding

import datetime
import decimal
import json
from flask.json.provider import DefaultJSONProvider
from uuid import UUID
import relgraph
from .errors import JsonapiError


class _RelGraphJSONEncoder:
    """
    JSON encoding for the values found in resource documents
    """

    # pylint: disable=too-many-return-statements
    def default(self, obj, **kwargs):
        """
        override the default json encoding
        :param obj: object to be encoded
        :return: encoded/serialized object
        """
        if obj is None:
            return None
        if isinstance(obj, JsonapiError):
            return obj.to_dict()
        if isinstance(obj, datetime.timedelta):
            return str(obj)
        if isinstance(obj, datetime.datetime):
            return obj.isoformat(" ")
        if isinstance(obj, (datetime.date, datetime.time)):
            return obj.isoformat()
        if isinstance(obj, (set, frozenset, tuple)):
            return list(obj)
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, decimal.Decimal):
            return float(obj)
        if isinstance(obj, bytes):
            if obj == b"":
                return ""
            relgraph.log.debug("RelGraphJSONEncoder: serializing bytes obj")
            return obj.hex()

        relgraph.log.warning(f'JSON Encoding Error: Unknown object type "{type(obj)}" for {obj}')
        return str(obj)


class RelGraphJSONProvider(_RelGraphJSONEncoder, DefaultJSONProvider):
    """
    Flask JSON encoding
    """

    mimetype = "application/vnd.api+json"


class RelGraphJSONEncoder(_RelGraphJSONEncoder, json.JSONEncoder):
    """
    Common JSON encoding
    """

    pass
