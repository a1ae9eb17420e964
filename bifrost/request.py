"""HTTP request, response and per-request context handled by the gateway."""

from __future__ import annotations

import copy as _copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Union
from urllib.parse import parse_qsl, urlencode, urlsplit

from bifrost import timecache

HTTP_START = "http_start"
HTTP_FINISH = "http_finish"

_ABORT_INDEX = 1 << 30

Handler = Callable[["RequestContext"], None]


@dataclass
class RequestOriginal:
    """The request as it arrived, before middlewares rewrote it."""

    server_id: str = ""
    scheme: str = ""
    host: str = ""
    method: str = ""
    path: str = ""
    query: str = ""
    protocol: str = ""


class Headers:
    """Ordered, case-insensitive, multi-valued header collection."""

    def __init__(
        self, items: Union[Mapping[str, str], Iterable[tuple[str, str]], None] = None
    ) -> None:
        self._items: list[tuple[str, str]] = []
        if items is None:
            return
        pairs = items.items() if isinstance(items, Mapping) else items
        for name, value in pairs:
            self.add(name, value)

    def get(self, key: str) -> str:
        """Return the first value for ``key``, or an empty string."""
        wanted = key.lower()
        return next((v for n, v in self._items if n.lower() == wanted), "")

    def get_all(self, key: str) -> list[str]:
        """Return every value for ``key`` in order."""
        wanted = key.lower()
        return [v for n, v in self._items if n.lower() == wanted]

    def set(self, key: str, value: str) -> None:
        """Replace all values of ``key`` with ``value``."""
        self.delete(key)
        self._items.append((key, value))

    def add(self, key: str, value: str) -> None:
        """Append another value for ``key``."""
        self._items.append((key, value))

    def delete(self, key: str) -> None:
        """Remove every value for ``key``."""
        wanted = key.lower()
        self._items = [(n, v) for n, v in self._items if n.lower() != wanted]

    def keys(self) -> list[str]:
        """Return the header names in order, one per value."""
        return [n for n, _ in self._items]

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and any(
            n.lower() == key.lower() for n, _ in self._items
        )

    def __repr__(self) -> str:
        return f"Headers({self._items!r})"


@dataclass
class Request:
    """An HTTP request being proxied."""

    method: str = "GET"
    scheme: str = "http"
    host: str = ""
    path: str = "/"
    query_string: str = ""
    protocol: str = "HTTP/1.1"
    headers: Headers = field(default_factory=Headers)
    body: bytes = b""

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type")

    def set_request_uri(self, uri: str) -> None:
        """Set path and query, and host and scheme when ``uri`` is absolute."""
        parts = urlsplit(uri)
        if parts.scheme and parts.netloc:
            self.scheme = parts.scheme
            self.host = parts.netloc
        self.path = parts.path or "/"
        self.query_string = parts.query

    def request_uri(self) -> str:
        """Return the path followed by the query string, if any."""
        if self.query_string:
            return f"{self.path}?{self.query_string}"
        return self.path

    def _query_pairs(self) -> list[tuple[str, str]]:
        return parse_qsl(self.query_string, keep_blank_values=True)

    def query(self, key: str) -> str:
        """Return the first query value for ``key``, or an empty string."""
        return next((v for k, v in self._query_pairs() if k == key), "")

    def has_query(self, key: str) -> bool:
        return any(k == key for k, _ in self._query_pairs())

    def add_query(self, key: str, value: str) -> None:
        pairs = self._query_pairs()
        pairs.append((key, value))
        self.query_string = urlencode(pairs)

    def delete_query(self, key: str) -> None:
        pairs = [(k, v) for k, v in self._query_pairs() if k != key]
        self.query_string = urlencode(pairs)


@dataclass
class Response:
    """An HTTP response returned to the client."""

    status_code: int = 200
    headers: Headers = field(default_factory=Headers)
    body: bytes = b""


@dataclass
class TraceStats:
    """Timing events and transfer sizes recorded while serving a request."""

    events: dict[str, datetime] = field(default_factory=dict)
    recv_size: int = 0
    send_size: int = 0
    error: Optional[str] = None

    def record(self, event: str, when: Optional[datetime] = None) -> None:
        """Record ``event`` at ``when``, or at the cached current time."""
        self.events[event] = when if when is not None else timecache.now()

    def get_event(self, event: str) -> Optional[datetime]:
        return self.events.get(event)


@dataclass(eq=False)
class RequestContext:
    """State of one request as it passes through the handler chain."""

    request: Request = field(default_factory=Request)
    response: Response = field(default_factory=Response)
    variables: dict[str, Any] = field(default_factory=dict)
    trace_stats: Optional[TraceStats] = None
    remote_addr: Optional[tuple[str, int]] = ("0.0.0.0", 0)
    client_ip_func: Optional[Callable[["RequestContext"], str]] = None
    handlers: list[Handler] = field(default_factory=list)
    index: int = -1

    def get(self, key: str) -> Any:
        """Return the variable ``key``, or ``None`` when it is not set."""
        return self.variables.get(key)

    def set(self, key: str, value: Any) -> None:
        self.variables[key] = value

    def __contains__(self, key: object) -> bool:
        return key in self.variables

    def get_string(self, key: str) -> str:
        value = self.variables.get(key)
        return value if isinstance(value, str) else ""

    def get_bool(self, key: str) -> bool:
        value = self.variables.get(key)
        return value if isinstance(value, bool) else False

    def get_int(self, key: str) -> int:
        value = self.variables.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        return 0

    def client_ip(self) -> str:
        """Return the client address, honouring forwarding headers."""
        if self.client_ip_func is not None:
            return self.client_ip_func(self)
        forwarded = self.request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = self.request.headers.get("X-Real-IP").strip()
        if real_ip:
            return real_ip
        if self.remote_addr is None:
            return ""
        return self.remote_addr[0]

    def next(self) -> None:
        """Run the remaining handlers in the chain."""
        self.index += 1
        while self.index < len(self.handlers):
            self.handlers[self.index](self)
            self.index += 1

    def abort(self) -> None:
        """Prevent any further handler from running."""
        self.index = _ABORT_INDEX

    def is_aborted(self) -> bool:
        return self.index >= _ABORT_INDEX

    def copy(self) -> "RequestContext":
        """Return an independent copy of this context."""
        return RequestContext(
            request=_copy.deepcopy(self.request),
            response=_copy.deepcopy(self.response),
            variables=dict(self.variables),
            trace_stats=_copy.deepcopy(self.trace_stats),
            remote_addr=self.remote_addr,
            client_ip_func=self.client_ip_func,
            handlers=list(self.handlers),
            index=self.index,
        )