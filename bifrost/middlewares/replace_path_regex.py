"""Middleware that rewrites the request path with a regular expression."""

from __future__ import annotations

import re
from contextlib import suppress
from typing import Any, Mapping

from bifrost.middlewares.registry import (
    MiddlewareExistsError,
    _normalize_path,
    register_middleware,
)
from bifrost.request import RequestContext

_TEMPLATE_REF = re.compile(r"\$(?:\$|\{(\w+)\}|(\w+))", re.ASCII)


def _group(match: re.Match[str], name: str) -> str:
    if name.isdigit():
        index = int(name)
        if index <= match.re.groups:
            return match.group(index) or ""
        return ""
    if name in match.re.groupindex:
        return match.group(name) or ""
    return ""


def _expand(template: str, match: re.Match[str]) -> str:
    """Expand ``$1``, ``${1}``, ``$name``, ``${name}`` and ``$$`` in ``template``."""

    def reference(ref: re.Match[str]) -> str:
        if ref.group(0) == "$$":
            return "$"
        name = ref.group(1) if ref.group(1) is not None else ref.group(2)
        return _group(match, name)

    return _TEMPLATE_REF.sub(reference, template)


class ReplacePathRegexMiddleware:
    """Replace every match of ``regex`` in the path with ``replacement``."""

    def __init__(self, regex: str, replacement: str) -> None:
        self.regex = re.compile(regex)
        self.replacement = replacement

    def __call__(self, c: RequestContext) -> None:
        new_path = self.regex.sub(lambda m: _expand(self.replacement, m), c.request.path)
        c.request.path = _normalize_path(new_path)
        c.next()


def create_middleware(params: Mapping[str, Any]) -> ReplacePathRegexMiddleware:
    """Build the middleware from its configuration."""
    regex = params.get("regex")
    if not isinstance(regex, str):
        raise ValueError("regex is not set or regex is invalid")
    replacement = params.get("replacement")
    if not isinstance(replacement, str):
        raise ValueError("replacement is not set or replacement is invalid")
    return ReplacePathRegexMiddleware(regex, replacement)


with suppress(MiddlewareExistsError):
    register_middleware("replace_path_regex", create_middleware)