# Configuration settings should be set in app.config
# The get_config function looks up a setting in the flask app config, the RelGraph class attributes
# and the environment (in that order)
import os
import logging
from dataclasses import dataclass, fields, replace
from flask import current_app
import relgraph
from typing import Any, Mapping, Optional, Union


def get_config(option: str) -> Optional[Union[bool, int, str]]:
    """Retrieve a configuration parameter from the app
    :param option: configuration parameter
    :return: configuration value
    """
    try:
        result = current_app.config[option]
    except (KeyError, RuntimeError):
        result = getattr(relgraph.RelGraph, option, None)
        if result is None:
            result = os.environ.get(option, None)
    return result


def is_debug() -> bool:
    """
    We use the loglevel to check whether we're running in debug mode
    :return: whether the app is in debug mode
    :rtype: Boolean
    """
    return relgraph.log.getEffectiveLevel() < logging.INFO


def _coerce(default: Any, value: Any) -> Any:
    """
    Settings read from the environment are strings, convert them to the type of the default
    """
    if not isinstance(value, str):
        return value
    if isinstance(default, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(value)
    return value


@dataclass(frozen=True)
class EngineConfig:
    """Settings used by the resource engine

    The fields map to upper case configuration options, eg. ``include_depth_limit`` => ``INCLUDE_DEPTH_LIMIT``
    """

    include_depth_limit: int = 3
    query_default_limit: int = 20
    query_max_limit: int = 100
    max_include_limit: int = 1000
    enable_pagination_counts: bool = True
    url_prefix: Optional[str] = None

    @classmethod
    def from_config(cls) -> "EngineConfig":
        """Build the config from ``get_config``, missing options keep their defaults"""
        default = cls()
        overrides = {}
        for field in fields(cls):
            value = get_config(field.name.upper())
            if value is not None:
                overrides[field.name] = _coerce(getattr(default, field.name), value)
        return default.with_overrides(overrides)

    def with_overrides(self, overrides: Mapping[str, Any]) -> "EngineConfig":
        """Return a new config where known fields are replaced by ``overrides``."""
        valid = {k: v for k, v in overrides.items() if k in self.__dataclass_fields__}
        if not valid:
            return self
        return replace(self, **valid)
