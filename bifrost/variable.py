"""Named request variables (``$...`` directives) and their resolution."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from bifrost import timecache
from bifrost.request import HTTP_FINISH, HTTP_START, RequestContext, RequestOriginal

TIME = "$time"
SERVER_ID = "$server_id"
ROUTE_ID = "$route_id"
SERVICE_ID = "$service_id"
UPSTREAM_ID = "$upstream_id"
REQUEST_ORIG = "$request_orig"
NETWORK_PEER_ADDRESS = "$network.peer.address"
HTTP_START_VAR = "$http.start"
HTTP_FINISH_VAR = "$http.finish"
HTTP_REQUEST = "$http.request"
HTTP_REQUEST_SIZE = "$http.request.size"
HTTP_REQUEST_SCHEME = "$http.request.scheme"
HTTP_REQUEST_HOST = "$http.request.host"
HTTP_REQUEST_METHOD = "$http.request.method"
HTTP_REQUEST_PATH = "$http.request.path"
HTTP_REQUEST_QUERY = "$http.request.query"
HTTP_REQUEST_PROTOCOL = "$http.request.protocol"
HTTP_REQUEST_URI = "$http.request.uri"
HTTP_REQUEST_PATH_ALIAS = "$http.request.path_alias"
HTTP_REQUEST_BODY = "$http.request.body"
HTTP_RESPONSE_SIZE = "$http.response.size"
HTTP_RESPONSE_STATUS_CODE = "$http.response.status_code"
DURATION = "$duration"
LOG_TIME = "$log_time"
UPSTREAM_REQUEST = "$upstream.request"
UPSTREAM_REQUEST_HOST = "$upstream.request.host"
UPSTREAM_REQUEST_METHOD = "$upstream.request.method"
UPSTREAM_REQUEST_PATH = "$upstream.request.path"
UPSTREAM_REQUEST_PATH_ALIAS = "$upstream.request.path_alias"
UPSTREAM_REQUEST_QUERY = "$upstream.request.query"
UPSTREAM_REQUEST_URI = "$upstream.request.uri"
UPSTREAM_REQUEST_PROTOCOL = "$upstream.request.protocol"
UPSTREAM_DURATION = "$upstream.duration"
UPSTREAM_RESPONSE_STATUS_CODE = "$upstream.response.status_code"
ALLOW = "$allow"
CLIENT_IP = "$client_ip"
TARGET_TIMEOUT = "target_timeout"

GRPC_STATUS_CODE = "$grpc.status_code"
GRPC_MESSAGE = "$grpc.message"

B = 1
KB = 1024 * B
MB = 1024 * KB
GB = 1024 * MB

_VAR_PREFIX = "$var."
_REQUEST_HEADER_PREFIX = "$http.request.header."
_RESPONSE_HEADER_PREFIX = "$http.response.header."
_GRPC_CONTENT_TYPE = "application/grpc"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


def _unix_micro(when: datetime) -> int:
    if when.tzinfo is None:
        when = when.astimezone()
    return (when - _EPOCH) // _MICROSECOND


def _format_float(value: float) -> str:
    """Shortest decimal form without an exponent."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    text = repr(float(value))
    if "e" in text or "E" in text:
        text = format(Decimal(text), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text


def _original(c: RequestContext) -> Optional[RequestOriginal]:
    value = c.get(REQUEST_ORIG)
    return value if isinstance(value, RequestOriginal) else None


def _request_line(method: str, path: str, query: str, protocol: str) -> str:
    target = f"{path}?{query}" if query else path
    return f"{method} {target} {protocol}"


def _from_original(attr: str) -> Callable[[RequestContext], Any]:
    def resolve(c: RequestContext) -> Any:
        info = _original(c)
        return None if info is None else getattr(info, attr)

    return resolve


def _from_string_var(name: str) -> Callable[[RequestContext], Any]:
    return lambda c: c.get_string(name)


def _peer_address(c: RequestContext) -> Optional[str]:
    return None if c.remote_addr is None else c.remote_addr[0]


def _request_size(c: RequestContext) -> Optional[int]:
    return None if c.trace_stats is None else c.trace_stats.recv_size


def _response_size(c: RequestContext) -> Optional[int]:
    return None if c.trace_stats is None else c.trace_stats.send_size


def _http_start(c: RequestContext) -> Optional[int]:
    if c.trace_stats is None:
        return None
    event = c.trace_stats.get_event(HTTP_START)
    return None if event is None else _unix_micro(event)


def _http_finish(c: RequestContext) -> int:
    event = None if c.trace_stats is None else c.trace_stats.get_event(HTTP_FINISH)
    return _unix_micro(event if event is not None else timecache.now())


def _http_request(c: RequestContext) -> Optional[str]:
    info = _original(c)
    if info is None:
        return None
    return _request_line(info.method, info.path, info.query, info.protocol)


def _http_request_uri(c: RequestContext) -> Optional[str]:
    info = _original(c)
    if info is None:
        return None
    return f"{info.path}?{info.query}" if info.query else info.path


def _http_request_body(c: RequestContext) -> str:
    if c.request.content_type == _GRPC_CONTENT_TYPE:
        return ""
    return c.request.body.decode("utf-8", errors="replace")


def _upstream_request(c: RequestContext) -> str:
    req = c.request
    return _request_line(req.method, req.path, req.query_string, req.protocol)


def _duration(c: RequestContext) -> Optional[str]:
    if c.trace_stats is None:
        return None
    start = c.trace_stats.get_event(HTTP_START)
    finish = c.trace_stats.get_event(HTTP_FINISH)
    if start is None or finish is None:
        return None
    micros = (finish - start) // _MICROSECOND
    return _format_float(micros / 1e6)


_DIRECTIVES: dict[str, Callable[[RequestContext], Any]] = {
    TIME: lambda c: timecache.now(),
    CLIENT_IP: lambda c: c.client_ip(),
    HTTP_REQUEST_HOST: _from_original("host"),
    SERVER_ID: _from_original("server_id"),
    NETWORK_PEER_ADDRESS: _peer_address,
    HTTP_REQUEST_SIZE: _request_size,
    HTTP_RESPONSE_SIZE: _response_size,
    HTTP_START_VAR: _http_start,
    HTTP_FINISH_VAR: _http_finish,
    HTTP_REQUEST: _http_request,
    HTTP_REQUEST_SCHEME: _from_original("scheme"),
    HTTP_REQUEST_PATH: _from_original("path"),
    HTTP_REQUEST_URI: _http_request_uri,
    HTTP_REQUEST_METHOD: _from_original("method"),
    HTTP_REQUEST_QUERY: _from_original("query"),
    HTTP_REQUEST_BODY: _http_request_body,
    HTTP_REQUEST_PROTOCOL: _from_original("protocol"),
    ROUTE_ID: _from_string_var(ROUTE_ID),
    SERVICE_ID: _from_string_var(SERVICE_ID),
    UPSTREAM_ID: _from_string_var(UPSTREAM_ID),
    UPSTREAM_REQUEST: _upstream_request,
    UPSTREAM_REQUEST_URI: lambda c: c.request.request_uri(),
    UPSTREAM_REQUEST_PROTOCOL: lambda c: c.request.protocol,
    UPSTREAM_REQUEST_METHOD: lambda c: c.request.method,
    UPSTREAM_REQUEST_PATH: lambda c: c.request.path,
    UPSTREAM_REQUEST_HOST: _from_string_var(UPSTREAM_REQUEST_HOST),
    UPSTREAM_REQUEST_QUERY: lambda c: c.request.query_string,
    DURATION: _duration,
    GRPC_STATUS_CODE: _from_string_var(GRPC_STATUS_CODE),
    GRPC_MESSAGE: _from_string_var(GRPC_MESSAGE),
}

_KNOWN_DIRECTIVES = frozenset(
    {
        *_DIRECTIVES,
        HTTP_RESPONSE_STATUS_CODE,
        UPSTREAM_RESPONSE_STATUS_CODE,
        UPSTREAM_DURATION,
    }
)


def _directive(key: str, c: RequestContext) -> Any:
    resolve = _DIRECTIVES.get(key)
    if resolve is not None:
        return resolve(c)
    if key.startswith(_REQUEST_HEADER_PREFIX):
        name = key[len(_REQUEST_HEADER_PREFIX):]
        return c.request.headers.get(name) if name else None
    if key.startswith(_RESPONSE_HEADER_PREFIX):
        name = key[len(_RESPONSE_HEADER_PREFIX):]
        return c.response.headers.get(name) if name else None
    return None


def get(key: str, c: Optional[RequestContext]) -> Any:
    """Resolve ``key`` against ``c``; return ``None`` when it has no value."""
    key = key.strip().lower()
    if not key or key[0] != "$" or c is None:
        return None
    if key.startswith(_VAR_PREFIX):
        return c.get(key[len(_VAR_PREFIX):])
    return _directive(key, c)


def _to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return ""


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return 0 if math.isnan(value) or math.isinf(value) else int(value)
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return 0.0
    return 0.0


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, str):
        if value in _TRUE_WORDS:
            return True
        return False
    return False


def get_string(key: str, c: Optional[RequestContext]) -> str:
    value = get(key, c)
    return "" if value is None else _to_string(value)


def get_int(key: str, c: Optional[RequestContext]) -> int:
    value = get(key, c)
    return 0 if value is None else _to_int(value)


def get_float(key: str, c: Optional[RequestContext]) -> float:
    value = get(key, c)
    return 0.0 if value is None else _to_float(value)


def get_bool(key: str, c: Optional[RequestContext]) -> bool:
    value = get(key, c)
    return False if value is None else _to_bool(value)


def is_directive(key: str) -> bool:
    """Tell whether ``key`` names a variable rather than a literal value."""
    if key.startswith((_VAR_PREFIX, _REQUEST_HEADER_PREFIX, _RESPONSE_HEADER_PREFIX)):
        return True
    if not key.startswith("$"):
        return False
    return key in _KNOWN_DIRECTIVES