"""Middleware that prepends a fixed prefix to the request path."""

from __future__ import annotations

from contextlib import suppress
from typing import Any, Mapping

from bifrost.middlewares.registry import (
    MiddlewareExistsError,
    _normalize_path,
    register_middleware,
)
from bifrost.request import RequestContext


class AddPrefixMiddleware:
    """Prepend ``prefix`` to the path of every request."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix

    def __call__(self, c: RequestContext) -> None:
        c.request.path = _normalize_path(self.prefix + c.request.path)
        c.next()


def create_middleware(params: Mapping[str, Any]) -> AddPrefixMiddleware:
    """Build the middleware from its configuration."""
    prefix = params.get("prefix")
    if not isinstance(prefix, str):
        raise ValueError("prefix is not set or prefix is invalid")
    return AddPrefixMiddleware(prefix)


with suppress(MiddlewareExistsError):
    register_middleware("add_prefix", create_middleware)