import pytest

from bifrost.middlewares.add_prefix import AddPrefixMiddleware, create_middleware
from bifrost.middlewares.registry import find_handler_by_type
from bifrost.request import RequestContext


def _context(path):
    c = RequestContext()
    c.request.method = "GET"
    c.request.path = path
    return c


def test_add_prefix():
    m = AddPrefixMiddleware("/api/v1")
    c = _context("/foo")
    m(c)
    assert c.request.path == "/api/v1/foo"


def test_add_prefix_more_slash():
    m = AddPrefixMiddleware("/api/v1/")
    c = _context("/foo")
    m(c)
    assert c.request.path == "/api/v1/foo"


def test_registered_factory_builds_middleware():
    factory = find_handler_by_type("add_prefix")
    assert factory is create_middleware
    handler = factory({"prefix": "/api/v1"})
    c = _context("/foo")
    handler(c)
    assert c.request.path == "/api/v1/foo"


@pytest.mark.parametrize("params", [{}, {"prefix": 5}])
def test_factory_rejects_invalid_prefix(params):
    with pytest.raises(ValueError, match="prefix is not set or prefix is invalid"):
        create_middleware(params)


def test_next_handler_sees_new_path():
    seen = []
    c = _context("/foo")
    c.handlers = [AddPrefixMiddleware("/api"), lambda ctx: seen.append(ctx.request.path)]
    c.next()
    assert c.request.path == "/api/foo"
    assert seen == ["/api/foo"]