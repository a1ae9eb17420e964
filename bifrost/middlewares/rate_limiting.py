"""Rate-limiting middleware with local and Redis-backed fixed-window limiters."""

from __future__ import annotations

import enum
import logging
import re
import threading
import time
from contextlib import suppress
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Protocol, Union

from bifrost import timecache, variable
from bifrost.middlewares.registry import MiddlewareExistsError, register_middleware
from bifrost.request import RequestContext

logger = logging.getLogger(__name__)

_MAX_INT64 = 2**63 - 1
_PURGE_INTERVAL = 600.0
_DEFAULT_CONTENT_TYPE = "application/json; charset=utf8"

_WINDOW_SCRIPT = """
local key = KEYS[1]
local tokens = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local now = tonumber(ARGV[4])

local current = redis.call("INCRBY", key, tokens)
local ttl = redis.call("TTL", key)
if ttl == -1 then
    redis.call("EXPIRE", key, window)
    ttl = window
end

local remaining = limit - current
if remaining < 0 then
    remaining = 0
end

return {current, limit, remaining, now + ttl * 1000}
"""

_SYNC_SCRIPT = """
local key = KEYS[1]
local max_tokens = tonumber(ARGV[1])
local ttl = tonumber(ARGV[2])

local current = redis.call("INCRBY", key, max_tokens)
if current == max_tokens then
    redis.call("EXPIRE", key, ttl)
end

return current
"""


class RedisClient(Protocol):
    """The part of a Redis client the limiters use."""

    def eval(self, script: str, numkeys: int, *keys_and_args: Any) -> Any: ...


class StrategyMode(str, enum.Enum):
    """Where the rate-limit counters are kept."""

    LOCAL = "local"
    REDIS = "redis"
    LOCAL_ASYNC_REDIS = "local-async-redis"


@dataclass
class AllowResult:
    """Outcome of one rate-limit check."""

    allow: bool
    limit: int
    remaining: int
    reset_time: datetime


@dataclass
class RateLimitOptions:
    """Configuration of the rate-limiting middleware."""

    strategy: Union[StrategyMode, str] = ""
    limit: int = 0
    limit_by: str = ""
    window_size: timedelta = timedelta(0)
    header_limit: str = ""
    header_remaining: str = ""
    header_reset: str = ""
    http_status_code: int = 0
    http_content_type: str = ""
    http_response_body: str = ""
    redis_id: str = ""


@dataclass
class _Entry:
    expiration: datetime
    counter: int
    deadline: float


class LocalLimiter:
    """Fixed-window counters kept in this process."""

    def __init__(self, options: RateLimitOptions) -> None:
        self.options = options
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._next_purge = time.monotonic() + _PURGE_INTERVAL

    def _purge(self, now: float) -> None:
        if now < self._next_purge:
            return
        self._entries = {k: e for k, e in self._entries.items() if e.deadline > now}
        self._next_purge = now + _PURGE_INTERVAL

    def allow(self, key: str) -> AllowResult:
        """Count one request for ``key`` and tell whether it is allowed."""
        limit = self.options.limit
        window = self.options.window_size
        with self._lock:
            mono = time.monotonic()
            self._purge(mono)
            entry = self._entries.get(key)
            if entry is not None and mono >= entry.deadline:
                entry = None

            if entry is None:
                entry = _Entry(
                    expiration=timecache.now() + window,
                    counter=1,
                    deadline=mono + window.total_seconds(),
                )
                self._entries[key] = entry
                return AllowResult(True, limit, max(limit - 1, 0), entry.expiration)

            if entry.counter >= limit:
                return AllowResult(False, limit, 0, entry.expiration)

            entry.counter += 1
            return AllowResult(True, limit, limit - entry.counter, entry.expiration)


def _as_int(value: Any) -> int:
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("ascii")
    return int(value)


class RedisLimiter:
    """Fixed-window counters kept in Redis and shared between gateways."""

    def __init__(self, client: RedisClient, options: RateLimitOptions) -> None:
        self.client = client
        self.options = options

    def allow(self, key: str) -> AllowResult:
        """Count one request for ``key``; allow it if Redis cannot be reached."""
        limit = self.options.limit
        now = timecache.now()
        now_ms = int(now.timestamp() * 1000)
        window_seconds = int(self.options.window_size.total_seconds())
        try:
            result = self.client.eval(
                _WINDOW_SCRIPT, 1, key, 1, limit, window_seconds, now_ms
            )
            current = _as_int(result[0])
            remaining = _as_int(result[2])
            reset_ms = _as_int(result[3])
        except Exception as exc:  # any client or protocol failure fails open
            logger.error("ratelimiting: redis eval error: %s", exc)
            return AllowResult(True, limit, limit, now + self.options.window_size)

        reset_time = datetime.fromtimestamp(reset_ms / 1000, tz=timezone.utc)
        return AllowResult(current <= limit, limit, max(remaining, 0), reset_time)


class LocalAsyncRedisLimiter:
    """Token bucket served locally and reconciled with Redis in the background."""

    def __init__(self, client: RedisClient, options: RateLimitOptions) -> None:
        self.client = client
        self.options = options
        self._max_tokens = min(options.limit, _MAX_INT64)
        self._tokens = self._max_tokens
        self._lock = threading.Lock()

    def try_acquire(self, token: int) -> bool:
        """Take ``token`` tokens; tell whether enough were left."""
        if token <= 0:
            return False
        threading.Thread(target=self._sync_with_redis, daemon=True).start()
        with self._lock:
            self._tokens -= token
            return self._tokens >= 0

    def _sync_with_redis(self) -> None:
        try:
            count = self.client.eval(
                _SYNC_SCRIPT,
                1,
                self.options.limit_by,
                self.options.limit,
                int(self.options.window_size.total_seconds()),
            )
        except Exception as exc:
            logger.debug("ratelimiting: redis sync error: %s", exc)
            return
        if not isinstance(count, int) or isinstance(count, bool):
            return
        with self._lock:
            self._tokens = self._max_tokens - count if count <= self._max_tokens else 0


_redis_clients: dict[str, RedisClient] = {}


def register_redis_client(redis_id: str, client: RedisClient) -> None:
    """Make ``client`` available to limiters configured with ``redis_id``."""
    _redis_clients[redis_id] = client


def _strategy(value: Union[StrategyMode, str]) -> StrategyMode:
    try:
        return StrategyMode(value)
    except ValueError:
        raise ValueError(f"strategy '{value}' is invalid") from None


class RateLimitingMiddleware:
    """Reject requests over the limit for the key named by ``limit_by``."""

    def __init__(self, options: RateLimitOptions) -> None:
        options = replace(
            options,
            header_limit=options.header_limit or "X-RateLimit-Limit",
            header_remaining=options.header_remaining or "X-RateLimit-Remaining",
            header_reset=options.header_reset or "X-RateLimit-Reset",
            http_status_code=options.http_status_code or 429,
            http_content_type=options.http_content_type or _DEFAULT_CONTENT_TYPE,
        )
        if options.window_size <= timedelta(0):
            raise ValueError("window_size must be greater than 0")

        strategy = _strategy(options.strategy)
        if strategy is StrategyMode.LOCAL:
            self.limiter: Union[LocalLimiter, RedisLimiter] = LocalLimiter(options)
        elif strategy is StrategyMode.REDIS:
            client = _redis_clients.get(options.redis_id)
            if client is None:
                raise ValueError(
                    f"redis id '{options.redis_id}' not found in ratelimiting middleware"
                )
            self.limiter = RedisLimiter(client, options)
        else:
            raise ValueError(f"strategy '{strategy.value}' is invalid")
        self.options = options

    def _write_headers(self, c: RequestContext, result: AllowResult) -> None:
        headers = c.response.headers
        headers.set(self.options.header_limit, str(result.limit))
        headers.set(self.options.header_remaining, str(result.remaining))
        headers.set(self.options.header_reset, str(int(result.reset_time.timestamp())))

    def __call__(self, c: RequestContext) -> None:
        if c.get_bool(variable.ALLOW):
            c.next()
            return

        value = variable.get_string(self.options.limit_by, c)
        if not value:
            c.next()
            return

        result = self.limiter.allow(f"rate_limit:{self.options.limit_by}:{value}")
        if result.allow:
            c.next()
            self._write_headers(c, result)
            return

        self._write_headers(c, result)
        c.response.status_code = self.options.http_status_code
        c.response.headers.set("Content-Type", self.options.http_content_type)
        if self.options.http_response_body:
            c.response.body = self.options.http_response_body.encode("utf-8")
        c.abort()


_UNITS = {
    "ns": Decimal(1),
    "us": Decimal(1_000),
    "µs": Decimal(1_000),
    "μs": Decimal(1_000),
    "ms": Decimal(1_000_000),
    "s": Decimal(1_000_000_000),
    "m": Decimal(60_000_000_000),
    "h": Decimal(3_600_000_000_000),
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def _parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``"10s"``, ``"1m30s"`` or ``"1.5h"``."""
    body = text
    negative = False
    if body[:1] in ("+", "-"):
        negative = body[0] == "-"
        body = body[1:]
    if body == "0":
        return timedelta(0)
    if not body:
        raise ValueError(f"invalid duration {text!r}")
    nanos = Decimal(0)
    pos = 0
    while pos < len(body):
        match = _DURATION_PART.match(body, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        try:
            nanos += Decimal(match.group(1)) * _UNITS[match.group(2)]
        except InvalidOperation:
            raise ValueError(f"invalid duration {text!r}") from None
        pos = match.end()
    result = timedelta(microseconds=float(nanos / 1000))
    return -result if negative else result


def _to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    raise ValueError(f"cannot convert {value!r} to a string")


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    raise ValueError(f"cannot convert {value!r} to an integer")


def _to_uint(value: Any) -> int:
    number = _to_int(value)
    if number < 0:
        raise ValueError(f"{value!r} is negative")
    return number


def create_middleware(params: Mapping[str, Any]) -> RateLimitingMiddleware:
    """Build the middleware from its configuration."""
    options = RateLimitOptions()

    if "strategy" not in params:
        raise ValueError("strategy is not found in rate-limiting middleware")
    try:
        options.strategy = _to_string(params["strategy"])
    except ValueError:
        raise ValueError("strategy is invalid in rate-limiting middleware") from None

    if "limit" not in params:
        raise ValueError("limit is not found in rate-limiting middleware")
    try:
        options.limit = _to_uint(params["limit"])
    except ValueError:
        raise ValueError("limit is invalid in rate-limiting middleware") from None

    if "limit_by" not in params:
        raise ValueError("limit_by is not found in rate-limiting middleware")
    try:
        options.limit_by = _to_string(params["limit_by"])
    except ValueError:
        raise ValueError("limit_by is invalid in rate-limiting middleware") from None

    if "window_size" not in params:
        raise ValueError("window_size is not found in rate-limiting middleware")
    try:
        options.window_size = _parse_duration(_to_string(params["window_size"]))
    except ValueError:
        raise ValueError("window_size is invalid in rate-limiting middleware") from None

    if "http_status" in params:
        try:
            options.http_status_code = _to_int(params["http_status"])
        except ValueError:
            raise ValueError(
                "http_status is invalid in rate-limiting middleware"
            ) from None

    if "http_content_type" in params:
        try:
            options.http_content_type = _to_string(params["http_content_type"])
        except ValueError:
            raise ValueError(
                "http_content_type is invalid in rate-limiting middleware"
            ) from None

    if "http_response_body" in params:
        try:
            options.http_response_body = _to_string(params["http_response_body"])
        except ValueError:
            raise ValueError(
                "http_response_body is invalid in rate-limiting middleware"
            ) from None

    if options.strategy == StrategyMode.REDIS.value:
        if "redis_id" not in params:
            raise ValueError("redis_id is not found in rate-limiting middleware")
        try:
            options.redis_id = _to_string(params["redis_id"])
        except ValueError:
            raise ValueError("redis_id is invalid in rate-limiting middleware") from None

    return RateLimitingMiddleware(options)


with suppress(MiddlewareExistsError):
    register_middleware("rate-limiting", create_middleware)