"""Middleware that removes the first matching prefix from the request path."""

from __future__ import annotations

from contextlib import suppress
from typing import Any, Iterable, Mapping

from bifrost.middlewares.registry import (
    MiddlewareExistsError,
    _normalize_path,
    _string_list,
    register_middleware,
)
from bifrost.request import RequestContext


class StripPrefixMiddleware:
    """Strip the first of ``prefixes`` that the path starts with."""

    def __init__(self, prefixes: Iterable[str]) -> None:
        self.prefixes = list(prefixes)

    def __call__(self, c: RequestContext) -> None:
        path = c.request.path
        prefix = next((p for p in self.prefixes if path.startswith(p)), None)
        if prefix is not None:
            c.request.path = _normalize_path(path[len(prefix):])
        c.next()


def create_middleware(params: Mapping[str, Any]) -> StripPrefixMiddleware:
    """Build the middleware from its configuration."""
    prefixes = params.get("prefixes")
    if prefixes is None:
        raise ValueError("prefixes is not set or prefixes is invalid")
    return StripPrefixMiddleware(_string_list(prefixes, "prefixes"))


with suppress(MiddlewareExistsError):
    register_middleware("strip_prefix", create_middleware)