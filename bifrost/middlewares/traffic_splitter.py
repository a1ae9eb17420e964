"""Middleware that picks a destination at random, weighted, per request."""

from __future__ import annotations

import secrets
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from bifrost.middlewares.registry import (
    MiddlewareExistsError,
    _option,
    register_middleware,
)
from bifrost.request import RequestContext


@dataclass
class Destination:
    """A possible target and its relative weight."""

    weight: int = 0
    to: str = ""


class TrafficSplitterMiddleware:
    """Store the chosen destination's ``to`` in the context variable ``key``."""

    def __init__(self, key: str, destinations: Iterable[Destination]) -> None:
        self.key = key
        self.destinations = list(destinations)
        self.total_weight = sum(dest.weight for dest in self.destinations)

    def __call__(self, c: RequestContext) -> None:
        remaining = secrets.randbelow(self.total_weight)
        for dest in self.destinations:
            if dest.weight <= 0:
                dest.weight = 1
            remaining -= dest.weight
            if remaining < 0:
                c.set(self.key, dest.to)
                break
        c.next()


def _destination(raw: Any) -> Destination:
    if not isinstance(raw, Mapping):
        raise ValueError("traffic-splitter: destination must be a mapping")
    weight = _option(raw, "weight", 0)
    to = _option(raw, "to", "")
    if not isinstance(weight, int) or isinstance(weight, bool):
        raise ValueError("traffic-splitter: weight is invalid")
    if not isinstance(to, str):
        raise ValueError("traffic-splitter: to is invalid")
    return Destination(weight=weight, to=to)


def create_middleware(params: Mapping[str, Any]) -> TrafficSplitterMiddleware:
    """Build the middleware from its configuration."""
    key = _option(params, "key", "")
    if not isinstance(key, str):
        raise ValueError("traffic-splitter: key is invalid")
    raw_destinations = _option(params, "destinations", [])
    if not isinstance(raw_destinations, (list, tuple)):
        raise ValueError("traffic-splitter: destinations is invalid")
    return TrafficSplitterMiddleware(key, [_destination(d) for d in raw_destinations])


with suppress(MiddlewareExistsError):
    register_middleware("traffic-splitter", create_middleware)