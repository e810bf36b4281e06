# Exception Handlers
#
# Every error carries a machine checkable ``kind`` and a message naming the offending field or path.
# The application loglevel determines the level of detail shown for opaque (storage) errors.
# If set to debug, too much sensitive info might be shown !
#
# Errors can be formatted as jsonapi error objects with ``to_dict()``, for example:
# {
#      "status": "400",
#      "code": "validation",
#      "title": "Validation Error",
#      "detail": "Validation Error: Unknown filter field 'colour' (allowed: name, price)"
# }
#
import traceback
from http import HTTPStatus
from werkzeug.exceptions import NotFound
from sqlalchemy.exc import DontWrapMixin
import relgraph
from .config import is_debug

HIDDEN_LOG = "(debug logging disabled)"


class JsonapiError(Exception, DontWrapMixin):
    """
    Base class for the errors raised by relgraph
    """

    kind = "error"
    title = "Error"
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR.value
    message = "Error: "

    def __init__(self, message=""):
        self.message = self.message + str(message)
        Exception.__init__(self, self.message)

    def to_dict(self):
        """
        :return: jsonapi error object
        """
        return {"status": str(self.status_code), "code": self.kind, "title": self.title, "detail": self.message}


class ConfigurationError(JsonapiError):
    """
    This exception is raised when a resource registration can't be compiled:
    bad computed fields, dangling relationship targets, cyclic getter/setter dependencies, ...
    """

    kind = "configuration"
    title = "Configuration Error"
    message = "Configuration Error: "

    def __init__(self, message=""):
        super().__init__(message)
        relgraph.log.error("ConfigurationError: %s", message)


class ValidationError(JsonapiError):
    """
    This exception is raised when invalid input has been detected (client side input)
    Always send back the message to the client in the response
    """

    kind = "validation"
    title = "Validation Error"
    status_code = HTTPStatus.BAD_REQUEST.value
    message = "Validation Error: "

    def __init__(self, message="", allowed=None, source=None):
        """
        :param message: Message to be returned in the (json) body
        :param allowed: the names that would have been accepted
        :param source: query parameter that caused the error, eg. "filter[colour]"
        """
        self.allowed = list(allowed) if allowed is not None else None
        self.source = source
        if self.allowed is not None:
            message = f"{message} (allowed: {', '.join(self.allowed)})"
        super().__init__(message)
        relgraph.log.warning("ValidationError: %s", message)

    def to_dict(self):
        result = super().to_dict()
        if self.source:
            result["source"] = {"parameter": self.source}
        if self.allowed is not None:
            result["meta"] = {"allowed": self.allowed}
        return result


class NotFoundError(JsonapiError, NotFound):
    """
    This exception is raised when an item was not found
    """

    kind = "not_found"
    title = "Not Found"
    status_code = HTTPStatus.NOT_FOUND.value
    message = "NotFoundError: "

    def __init__(self, message=""):
        JsonapiError.__init__(self, message)
        NotFound.__init__(self, description=self.message)
        relgraph.log.info("Not found: %s", message)


class StorageError(JsonapiError):
    """
    This exception is raised when the storage collaborator failed.
    The original exception is chained, the details are only shown in debug mode
    """

    kind = "storage"
    title = "Storage Error"
    message = "Storage Error: "

    def __init__(self, message=""):
        relgraph.log.error("Storage Error: %s", message)
        if is_debug():
            relgraph.log.debug(traceback.format_exc(120))
            super().__init__(message)
        else:
            super().__init__(HIDDEN_LOG)
