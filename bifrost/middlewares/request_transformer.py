"""Middleware that removes and adds request headers and query parameters."""

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


def _resolve(value: str, c: RequestContext) -> str:
    return variable.get_string(value, c) if variable.is_directive(value) else value


class RequestTransformerMiddleware:
    """Edit the request's headers and query string before it is proxied."""

    def __init__(
        self,
        remove_headers: Optional[Iterable[str]] = None,
        remove_querystring: Optional[Iterable[str]] = None,
        add_headers: Optional[Mapping[str, str]] = None,
        add_querystring: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.remove_headers = list(remove_headers or ())
        self.remove_querystring = list(remove_querystring or ())
        self.add_headers = dict(add_headers or {})
        self.add_querystring = dict(add_querystring or {})

    def __call__(self, c: RequestContext) -> None:
        request = c.request
        for header in self.remove_headers:
            if header:
                request.headers.delete(_resolve(header, c))
        for name in self.remove_querystring:
            if name:
                request.delete_query(name)
        for key, value in self.add_headers.items():
            if key:
                request.headers.set(key, _resolve(value, c))
        for key, value in self.add_querystring.items():
            if key:
                request.add_query(key, _resolve(value, c))


def create_middleware(params: Mapping[str, Any]) -> RequestTransformerMiddleware:
    """Build the middleware from its configuration."""
    remove = _section(params, "remove")
    add = _section(params, "add")
    return RequestTransformerMiddleware(
        remove_headers=_string_list(_option(remove, "headers"), "remove.headers"),
        remove_querystring=_string_list(
            _option(remove, "querystring"), "remove.querystring"
        ),
        add_headers=_string_map(_option(add, "headers"), "add.headers"),
        add_querystring=_string_map(_option(add, "querystring"), "add.querystring"),
    )


with suppress(MiddlewareExistsError):
    register_middleware("request-transformer", create_middleware)