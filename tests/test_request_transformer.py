import pytest

from bifrost.middlewares.registry import find_handler_by_type
from bifrost.middlewares.request_transformer import (
    RequestTransformerMiddleware,
    create_middleware,
)
from bifrost.request import RequestContext


def test_remove():
    factory = find_handler_by_type("request-transformer")
    params = {
        "remove": {
            "headers": ["x-user-id"],
            "querystring": ["mode"],
        }
    }
    m = factory(params)
    c = RequestContext()
    c.request.method = "GET"
    c.request.set_request_uri("/foo?mode=1")
    c.request.headers.set("x-user-id", "1")
    m(c)
    assert c.request.headers.get("x-user-id") == ""
    assert c.request.has_query("mode") is False


def test_add():
    factory = find_handler_by_type("request-transformer")
    params = {
        "add": {
            "headers": {"x-source": "web", "x-http-start": "$var.http_start"},
            "querystring": {"mode": "1"},
        }
    }
    m = factory(params)
    c = RequestContext()
    c.set("http_start", "12345678")
    c.request.method = "GET"
    c.request.path = "/foo"
    m(c)
    assert c.request.headers.get("x-source") == "web"
    assert c.request.headers.get("x-http-start") == "12345678"
    assert c.request.query("mode") == "1"


def test_remove_header_named_by_directive():
    c = RequestContext()
    c.set("target", "x-drop")
    c.request.headers.set("x-drop", "1")
    c.request.headers.set("x-keep", "2")
    RequestTransformerMiddleware(remove_headers=["$var.target"])(c)
    assert c.request.headers.get("x-drop") == ""
    assert c.request.headers.get("x-keep") == "2"


def test_empty_names_are_skipped():
    c = RequestContext()
    RequestTransformerMiddleware(add_headers={"": "v"}, add_querystring={"": "v"})(c)
    assert len(c.request.headers) == 0
    assert c.request.query_string == ""


@pytest.mark.parametrize(
    "params",
    [
        {"remove": "x"},
        {"remove": {"headers": "x-user-id"}},
        {"add": {"headers": {"x": 1}}},
    ],
)
def test_factory_rejects_invalid_params(params):
    with pytest.raises(ValueError):
        create_middleware(params)