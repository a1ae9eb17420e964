import pytest

from bifrost.middlewares.registry import find_handler_by_type
from bifrost.middlewares.response_transformer import (
    ResponseTransformerMiddleware,
    create_middleware,
)
from bifrost.request import RequestContext


def test_remove():
    factory = find_handler_by_type("response-transformer")
    m = factory({"remove": {"headers": ["x-user-id"]}})
    c = RequestContext()
    c.request.method = "GET"
    c.request.set_request_uri("/foo?mode=1")
    c.response.headers.set("x-user-id", "1")
    m(c)
    assert c.response.headers.get("x-user-id") == ""


def test_add():
    factory = find_handler_by_type("response-transformer")
    params = {
        "add": {
            "headers": {
                "x-source": "web",
                "x-http-start": "$var.http_start",
                "x-user-id": "",
            }
        }
    }
    m = factory(params)
    c = RequestContext()
    c.set("http_start", "12345678")
    c.request.method = "GET"
    c.request.path = "/foo"
    m(c)
    assert c.response.headers.get("x-source") == "web"
    assert c.response.headers.get("x-http-start") == "12345678"
    assert c.response.headers.get("x-user-id") == ""


def test_request_headers_untouched():
    c = RequestContext()
    c.request.headers.set("x-user-id", "1")
    ResponseTransformerMiddleware(remove_headers=["x-user-id"])(c)
    assert c.request.headers.get("x-user-id") == "1"


def test_add_replaces_existing_value():
    c = RequestContext()
    c.response.headers.add("x-source", "a")
    c.response.headers.add("x-source", "b")
    ResponseTransformerMiddleware(add_headers={"x-source": "web"})(c)
    assert c.response.headers.get_all("x-source") == ["web"]


def test_factory_rejects_invalid_params():
    with pytest.raises(ValueError):
        create_middleware({"remove": {"headers": [1]}})