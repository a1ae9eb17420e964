"""Middleware that replaces the whole request path."""

from __future__ import annotations

from contextlib import suppress
from typing import Any, Mapping

from bifrost.middlewares.registry import (
    MiddlewareExistsError,
    _normalize_path,
    register_middleware,
)
from bifrost.request import RequestContext


class ReplacePathMiddleware:
    """Set the request path to ``new_path``."""

    def __init__(self, new_path: str) -> None:
        if not new_path.startswith("/"):
            new_path = "/" + new_path
        self.new_path = new_path

    def __call__(self, c: RequestContext) -> None:
        c.request.path = _normalize_path(self.new_path)
        c.next()


def create_middleware(params: Mapping[str, Any]) -> ReplacePathMiddleware:
    """Build the middleware from its configuration."""
    new_path = params.get("path")
    if not isinstance(new_path, str):
        raise ValueError("path is not set or path is invalid")
    return ReplacePathMiddleware(new_path)


with suppress(MiddlewareExistsError):
    register_middleware("replace_path", create_middleware)