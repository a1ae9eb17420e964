from collections import Counter
from unittest import mock

import pytest

from bifrost.middlewares.registry import find_handler_by_type
from bifrost.middlewares.traffic_splitter import (
    Destination,
    TrafficSplitterMiddleware,
    create_middleware,
)
from bifrost.request import RequestContext


def _context():
    c = RequestContext()
    c.request.method = "POST"
    c.request.path = "/api/v1/hello"
    return c


def _splitter():
    return TrafficSplitterMiddleware(
        "$my_order",
        [Destination(weight=90, to="old_server"), Destination(weight=10, to="new_server")],
    )


def _route_once(m):
    c = _context()
    m(c)
    return c.get_string(m.key)


def test_splitter_distribution():
    m = _splitter()
    counts = Counter(_route_once(m) for _ in range(1000))
    assert set(counts) <= {"old_server", "new_server"}
    assert sum(counts.values()) == 1000
    assert abs(counts["old_server"] - 900) <= 50
    assert abs(counts["new_server"] - 100) <= 50


def test_total_weight():
    assert _splitter().total_weight == 100


@pytest.mark.parametrize("draw,expected", [(0, "old_server"), (89, "old_server"), (90, "new_server"), (99, "new_server")])
def test_weight_boundaries(draw, expected):
    m = _splitter()
    c = _context()
    with mock.patch("secrets.randbelow", return_value=draw):
        m(c)
    assert c.get_string("$my_order") == expected


def test_zero_total_weight_raises():
    m = TrafficSplitterMiddleware("k", [Destination(weight=0, to="a")])
    with pytest.raises(ValueError):
        m(_context())


def test_registered_factory():
    factory = find_handler_by_type("traffic-splitter")
    assert factory is create_middleware
    m = factory({"key": "$target", "destinations": [{"weight": 1, "to": "only"}]})
    c = _context()
    m(c)
    assert c.get_string("$target") == "only"


def test_factory_rejects_invalid_destination():
    with pytest.raises(ValueError):
        create_middleware({"key": "k", "destinations": [{"weight": "heavy", "to": "a"}]})