import asyncio
import datetime
import decimal
import json
import uuid

import pytest
from flask import Flask, request

from conftest import RecordingStorage, library_registry
from relgraph import ConfigurationError, RelGraph, RelGraphJSONEncoder, RelGraphRequest, ValidationError, get_config
from relgraph.config import EngineConfig

BOOK_ROWS = [
    {"id": 1, "title": "Dune", "year": 1965, "price": 9.5, "country_id": 1, "publisher_id": 1},
    {"id": 2, "title": "Emma", "year": 1815, "price": 5.0, "country_id": 1, "publisher_id": 2},
]


@pytest.fixture(autouse=True)
def relgraph_settings():
    """
    init_app copies the configuration onto the RelGraph class, restore it after every test
    """
    saved = dict(vars(RelGraph))
    yield
    for name in list(vars(RelGraph)):
        if name not in saved:
            delattr(RelGraph, name)
    for name, value in saved.items():
        if name.isupper():
            setattr(RelGraph, name, value)


def create_app(library, storage, **kwargs):
    app = Flask("relgraph_test")
    app.config.update(kwargs.pop("config", {}))
    RelGraph(app, library, storage, **kwargs)

    @app.route("/<type_name>")
    def collection(type_name):
        engine = app.extensions["relgraph"]
        return app.json.response(asyncio.run(engine.query(type_name, **request.query_params())))

    @app.route("/<type_name>/<object_id>")
    def instance(type_name, object_id):
        engine = app.extensions["relgraph"]
        return app.json.response(asyncio.run(engine.get(type_name, object_id, request.includes, request.fields)))

    return app


def test_request_arguments():
    app = Flask("relgraph_test")
    app.request_class = RelGraphRequest
    url = (
        "/books?filter[title]=Dune&filter[publisher.name]=Querido&sort=-year,title&page[number]=2&page[size]=10"
        "&include=authors,publisher.country&fields[books]=title,year&utm=1"
    )
    with app.test_request_context(url):
        assert request.filters == {"title": "Dune", "publisher.name": "Querido"}
        assert request.sort == ["-year", "title"]
        assert request.page == {"number": "2", "size": "10"}
        assert request.includes == ["authors", "publisher.country"]
        assert request.fields == {"books": ["title", "year"]}
        params = request.query_params()
        assert params["query_args"]["utm"] == "1"
        assert set(params) == {"filters", "sort", "page", "include", "fields", "query_args"}


def test_is_jsonapi():
    app = Flask("relgraph_test")
    app.request_class = RelGraphRequest
    with app.test_request_context("/books", content_type="application/vnd.api+json; charset=utf-8"):
        assert request.is_jsonapi
    with app.test_request_context("/books", content_type="text/plain"):
        assert not request.is_jsonapi


def test_init_app_reads_app_config(library):
    app = create_app(library, RecordingStorage(), config={"INCLUDE_DEPTH_LIMIT": 2, "URL_PREFIX": "/api"}, QUERY_MAX_LIMIT=50)
    engine = app.extensions["relgraph"]
    assert engine.config == EngineConfig(include_depth_limit=2, query_max_limit=50, url_prefix="/api")
    assert app.request_class is RelGraphRequest


def test_include_window_limit_follows_query_max_limit():
    with pytest.raises(ConfigurationError, match="exceeds the maximum of 5"):
        create_app(library_registry({"limit": 10}), RecordingStorage(), config={"QUERY_MAX_LIMIT": 5})

    registry = library_registry({"limit": 150})
    app = create_app(registry, RecordingStorage(), config={"QUERY_MAX_LIMIT": 200})
    assert app.extensions["relgraph"].config.query_max_limit == 200
    assert registry.compile("authors").relationships["books"].window.limit == 150


def test_registry_reads_query_max_limit(monkeypatch):
    monkeypatch.setattr(RelGraph, "QUERY_MAX_LIMIT", 3)
    with pytest.raises(ConfigurationError, match="exceeds the maximum of 3"):
        library_registry({"limit": 4}).validate()
    registry = library_registry({"limit": 4})
    registry.query_max_limit = 4
    assert registry.compile("authors").relationships["books"].window.limit == 4


def test_get_config():
    assert get_config("QUERY_DEFAULT_LIMIT") == 20
    app = Flask("relgraph_test")
    app.config["QUERY_DEFAULT_LIMIT"] = 5
    with app.app_context():
        assert get_config("QUERY_DEFAULT_LIMIT") == 5
        assert EngineConfig.from_config().query_default_limit == 5


def test_config_from_environment(monkeypatch):
    monkeypatch.setenv("URL_PREFIX", "/v1")
    monkeypatch.setattr(RelGraph, "ENABLE_PAGINATION_COUNTS", None)
    monkeypatch.setenv("ENABLE_PAGINATION_COUNTS", "false")
    config = EngineConfig.from_config()
    assert config.url_prefix == "/v1"
    assert config.enable_pagination_counts is False


def test_with_overrides():
    config = EngineConfig()
    assert config.with_overrides({"colour": "red"}) is config
    assert config.with_overrides({"query_max_limit": 10}).query_max_limit == 10
    assert config.query_max_limit == 100


def test_collection_response(library):
    app = create_app(library, RecordingStorage(BOOK_ROWS, total=2), config={"URL_PREFIX": "/api"})
    response = app.test_client().get("/books?filter[title]=e&page[size]=1&page[number]=1")
    assert response.status_code == 200
    assert response.mimetype == "application/vnd.api+json"
    document = response.get_json()
    assert [item["id"] for item in document["data"]] == ["1", "2"]
    assert document["meta"]["pagination"]["total"] == 2
    assert "filter%5Btitle%5D=e" in document["links"]["next"]


def test_validation_error_response(library):
    storage = RecordingStorage()
    app = create_app(library, storage)
    response = app.test_client().get("/books?filter[colour]=red")
    assert response.status_code == 400
    error = response.get_json()["errors"][0]
    assert error["code"] == "validation"
    assert error["source"] == {"parameter": "filter[colour]"}
    assert "title" in error["meta"]["allowed"]
    assert storage.calls == []


def test_not_found_response(library):
    app = create_app(library, RecordingStorage())
    response = app.test_client().get("/books/99")
    assert response.status_code == 404
    assert response.get_json()["errors"][0]["code"] == "not_found"


def test_json_encoding(library):
    app = create_app(library, RecordingStorage())
    value = {
        "date": datetime.date(2020, 1, 2),
        "when": datetime.datetime(2020, 1, 2, 3, 4, 5),
        "price": decimal.Decimal("1.5"),
        "tags": {"a"},
        "uid": uuid.UUID(int=1),
        "raw": b"\x01",
    }
    expected = {
        "date": "2020-01-02",
        "when": "2020-01-02 03:04:05",
        "price": 1.5,
        "tags": ["a"],
        "uid": "00000000-0000-0000-0000-000000000001",
        "raw": "01",
    }
    assert json.loads(app.json.dumps(value)) == expected
    assert json.loads(json.dumps(value, cls=RelGraphJSONEncoder)) == expected
    error = ValidationError("bad")
    assert json.loads(json.dumps({"error": error}, cls=RelGraphJSONEncoder))["error"]["status"] == "400"
