import logging
import os
import sys
from flask import Flask
import flask.app
from .request import RelGraphRequest
from .json_encoder import RelGraphJSONProvider


class RelGraph:
    """This class configures the Flask application to query the registered resources
    :param app: a Flask application.
    :param registry: ResourceRegistry with the resource types
    :param storage: storage collaborator, eg. SQLAlchemyStorage

    The engine is stored in ``app.extensions["relgraph"]``
    """

    # Configuration settings are stored as class variables
    INCLUDE_DEPTH_LIMIT = 3
    QUERY_DEFAULT_LIMIT = 20
    QUERY_MAX_LIMIT = 100
    MAX_INCLUDE_LIMIT = 1000
    ENABLE_PAGINATION_COUNTS = True
    URL_PREFIX = None
    LOGLEVEL = logging.WARNING

    def __init__(self, app: flask.app.Flask = None, *args, **kwargs) -> None:
        """
        Constructor
        """
        self.app = app
        self.engine = None
        if app is not None:
            self.init_app(app, *args, **kwargs)

    def init_app(self, app: flask.app.Flask, registry, storage, **kwargs) -> None:
        """
        Engine and application initialization, the keyword arguments override the configuration
        """
        from .config import EngineConfig
        from .engine import ResourceEngine
        from .errors import JsonapiError

        if not isinstance(app, Flask):  # pragma: no cover
            raise TypeError("'app' should be Flask.")

        app.request_class = RelGraphRequest
        app.json = RelGraphJSONProvider(app)

        if app.config.get("DEBUG", False):
            log.setLevel(logging.DEBUG)

        for conf_name, conf_val in kwargs.items():
            setattr(RelGraph, conf_name, conf_val)

        for conf_name, conf_val in app.config.items():
            setattr(RelGraph, conf_name, conf_val)

        @app.errorhandler(JsonapiError)
        def handle_jsonapi_error(exc):
            return app.json.response({"errors": [exc.to_dict()], "jsonapi": {"version": "1.0"}}), exc.status_code

        with app.app_context():
            config = EngineConfig.from_config()
        registry.configure(config)
        registry.validate()
        self.engine = ResourceEngine(registry, storage, config)
        app.extensions["relgraph"] = self.engine
        log.debug(f"relgraph initialized: {config}")

    @staticmethod
    def init_logging(loglevel: int = logging.WARNING) -> logging.Logger:
        """
        Specify the log format used in the webserver logs
        """
        log = logging.getLogger(__name__)
        if log.level == logging.NOTSET:
            handler = logging.StreamHandler(sys.stderr)
            formatter = logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s")
            handler.setFormatter(formatter)
            log.setLevel(loglevel)
            log.addHandler(handler)
        return log


#
# logging initialization
#
try:
    DEBUG = os.getenv("DEBUG", logging.WARNING)
    LOGLEVEL = int(DEBUG)
except ValueError:  # pragma: no cover
    print(f'Invalid LogLevel in DEBUG Environment Variable! "{DEBUG}"')
    LOGLEVEL = logging.INFO

log = RelGraph.init_logging(LOGLEVEL)
