"""Middleware that removes and adds response headers."""

from __future__ import annotations

from contextlib import suppress
from typing import Any, Iterable, Mapping, Optional

from bifrost import variable
from bifrost.middlewares.registry import (
    MiddlewareExistsError,
    _option,
    _section,
    _string_list,
    _string_map,
    register_middleware,
)
from bifrost.request import RequestContext


class ResponseTransformerMiddleware:
    """Edit the response headers sent back to the client."""

    def __init__(
        self,
        remove_headers: Optional[Iterable[str]] = None,
        add_headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.remove_headers = list(remove_headers or ())
        self.add_headers = dict(add_headers or {})

    def __call__(self, c: RequestContext) -> None:
        headers = c.response.headers
        for header in self.remove_headers:
            if header:
                headers.delete(header)
        for key, value in self.add_headers.items():
            if not key:
                continue
            if variable.is_directive(value):
                value = variable.get_string(value, c)
            headers.set(key, value)


def create_middleware(params: Mapping[str, Any]) -> ResponseTransformerMiddleware:
    """Build the middleware from its configuration."""
    remove = _section(params, "remove")
    add = _section(params, "add")
    return ResponseTransformerMiddleware(
        remove_headers=_string_list(_option(remove, "headers"), "remove.headers"),
        add_headers=_string_map(_option(add, "headers"), "add.headers"),
    )


with suppress(MiddlewareExistsError):
    register_middleware("response-transformer", create_middleware)