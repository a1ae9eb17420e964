"""Middleware that answers the request itself and stops the chain."""

from __future__ import annotations

from contextlib import suppress
from typing import Any, Mapping

from bifrost.middlewares.registry import (
    MiddlewareExistsError,
    _option,
    register_middleware,
)
from bifrost.request import RequestContext


class RequestTerminationMiddleware:
    """Write a fixed status, content type and body, then abort."""

    def __init__(self, status_code: int = 0, content_type: str = "", body: str = "") -> None:
        self.status_code = status_code
        self.content_type = content_type
        self.body = body

    def __call__(self, c: RequestContext) -> None:
        if self.status_code > 0:
            c.response.status_code = self.status_code
        if self.content_type:
            c.response.headers.set("Content-Type", self.content_type)
        if self.body:
            c.response.body = self.body.encode("utf-8")
        c.abort()


def _typed(params: Mapping[str, Any], name: str, kind: type, default: Any) -> Any:
    value = _option(params, name)
    if value is None:
        return default
    if not isinstance(value, kind) or isinstance(value, bool):
        raise ValueError(f"request-termination: {name} is invalid")
    return value


def create_middleware(params: Mapping[str, Any]) -> RequestTerminationMiddleware:
    """Build the middleware from its configuration."""
    status_code = _typed(params, "status_code", int, 0)
    content_type = _typed(params, "content_type", str, "")
    body = _typed(params, "body", str, "")
    if status_code == 0:
        raise ValueError("request-termination: status_code can't be empty")
    return RequestTerminationMiddleware(status_code, content_type, body)


with suppress(MiddlewareExistsError):
    register_middleware("request-termination", create_middleware)