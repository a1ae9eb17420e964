import pytest

from bifrost.middlewares.registry import find_handler_by_type
from bifrost.middlewares.replace_path import ReplacePathMiddleware, create_middleware
from bifrost.request import RequestContext


def _context(path):
    c = RequestContext()
    c.request.method = "GET"
    c.request.path = path
    return c


def test_replace_path():
    m = ReplacePathMiddleware("/api/v1/hello")
    c = _context("/foo")
    m(c)
    assert c.request.path == "/api/v1/hello"


def test_missing_leading_slash_is_added():
    m = ReplacePathMiddleware("api/v1/hello")
    assert m.new_path == "/api/v1/hello"
    c = _context("/foo")
    m(c)
    assert c.request.path == "/api/v1/hello"


def test_query_string_is_kept():
    c = _context("/foo")
    c.request.query_string = "a=1"
    ReplacePathMiddleware("/bar")(c)
    assert c.request.request_uri() == "/bar?a=1"


def test_registered_factory():
    factory = find_handler_by_type("replace_path")
    assert factory is create_middleware
    c = _context("/foo")
    factory({"path": "/api/v1/hello"})(c)
    assert c.request.path == "/api/v1/hello"


def test_factory_rejects_missing_path():
    with pytest.raises(ValueError, match="path is not set or path is invalid"):
        create_middleware({})