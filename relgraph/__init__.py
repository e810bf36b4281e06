# flake8: noqa: F401
#
# relgraph: JSON:API relationship and query resolution
#
from .relgraph_init import log, RelGraph
from .errors import JsonapiError, ConfigurationError, ValidationError, NotFoundError, StorageError
from .config import EngineConfig, get_config
from .registry import ResourceRegistry
from .engine import ResourceEngine
from .storage import Storage, SQLAlchemyStorage
from .request import RelGraphRequest
from .json_encoder import RelGraphJSONProvider, RelGraphJSONEncoder
from .compiler import apply_setters, detect_pivot
from .__about__ import __version__, __description__

__all__ = (
    "__version__",
    "__description__",
    #
    "RelGraph",
    "ResourceEngine",
    "ResourceRegistry",
    "EngineConfig",
    "get_config",
    # storage:
    "Storage",
    "SQLAlchemyStorage",
    # compiler:
    "apply_setters",
    "detect_pivot",
    # json:
    "RelGraphJSONProvider",
    "RelGraphJSONEncoder",
    # Errors:
    "JsonapiError",
    "ConfigurationError",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    # request
    "RelGraphRequest",
)
