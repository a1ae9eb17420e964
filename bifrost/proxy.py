"""Upstream proxy interface and helpers for building upstream URLs."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from bifrost.request import Request, RequestContext


class MaxFailedCountError(Exception):
    """Raised when an upstream reaches its maximum number of failures."""

    def __init__(self, message: str = "proxy: reach max failed count") -> None:
        super().__init__(message)


@runtime_checkable
class Proxy(Protocol):
    """An upstream target that requests can be forwarded to."""

    @property
    def id(self) -> str: ...

    @property
    def target(self) -> str: ...

    @property
    def weight(self) -> int: ...

    def is_available(self) -> bool: ...

    def add_failed_count(self, count: int) -> None: ...

    def serve_http(self, c: RequestContext) -> None: ...


def is_ascii_print(s: str) -> bool:
    """Tell whether every character of ``s`` is printable ASCII."""
    return all(" " <= ch <= "~" for ch in s)


def join_url_path(request: Request, target: str) -> str:
    """Join ``target`` with the request's path and query string."""
    path = request.path
    path_has_slash = path.startswith("/")
    if not target.startswith("http"):
        separator = "" if target.startswith("/") else "/"
        target = request.host + separator + target
    target_has_slash = target.endswith("/")

    target_parts = target.split("?")
    pieces = [target_parts[0]]
    if path_has_slash and target_has_slash:
        pieces.append(path[1:])
    elif not path_has_slash and not target_has_slash:
        pieces.extend(("/", path))
    else:
        pieces.append(path)
    if len(target_parts) > 1:
        pieces.extend(("?", target_parts[1]))
    if request.query_string:
        pieces.append("?" if len(target_parts) == 1 else "&")
        pieces.append(request.query_string)
    return "".join(pieces)


def full_uri(request: Request) -> str:
    """Return the method followed by the absolute request URI."""
    return f"{request.method} {request.scheme}://{request.host}{request.request_uri()}"