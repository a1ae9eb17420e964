"""Middleware that stores fixed variables on the request context."""

from __future__ import annotations

from contextlib import suppress
from typing import Any, Mapping

from bifrost.middlewares.registry import MiddlewareExistsError, register_middleware
from bifrost.request import RequestContext


class SetVarsMiddleware:
    """Set each of ``variables`` on the context."""

    def __init__(self, variables: Mapping[str, Any]) -> None:
        self.variables = dict(variables)

    def __call__(self, c: RequestContext) -> None:
        for key, value in self.variables.items():
            if key:
                c.set(key, value)


def create_middleware(params: Mapping[str, Any]) -> SetVarsMiddleware:
    """Build the middleware from its configuration."""
    if not params:
        raise ValueError("setvars middleware params is empty or invalid")
    return SetVarsMiddleware(params)


with suppress(MiddlewareExistsError):
    register_middleware("setvars", create_middleware)