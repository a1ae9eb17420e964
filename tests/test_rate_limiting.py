import math
import threading
import time
from datetime import timedelta
from typing import Optional

import pytest

from bifrost import timecache, variable
from bifrost.middlewares.rate_limiting import (
    LocalAsyncRedisLimiter,
    LocalLimiter,
    RateLimitingMiddleware,
    RateLimitOptions,
    RedisLimiter,
    StrategyMode,
    create_middleware,
    register_redis_client,
)
from bifrost.middlewares.registry import find_handler_by_type
from bifrost.request import RequestContext


@pytest.fixture(autouse=True)
def _real_clock():
    timecache.set_default(None)
    yield
    timecache.set_default(None)


class FakeRedis:
    """In-memory stand-in for a Redis server running the window script."""

    def __init__(self) -> None:
        self._data: dict = {}
        self._lock = threading.Lock()

    def eval(self, script, numkeys, *keys_and_args):
        key = keys_and_args[0]
        tokens, limit, window, now_ms = keys_and_args[1:]
        with self._lock:
            now = time.monotonic()
            count, deadline = self._data.get(key, (0, None))
            if deadline is not None and now >= deadline:
                count, deadline = 0, None
            count += tokens
            if deadline is None:
                deadline = now + window
                ttl = window
            else:
                ttl = max(0, math.ceil(deadline - now))
            self._data[key] = (count, deadline)
        return [count, limit, max(0, limit - count), now_ms + ttl * 1000]


class BrokenRedis:
    def eval(self, script, numkeys, *keys_and_args):
        raise ConnectionError("redis is down")


class CountingRedis:
    def __init__(self, count: Optional[int]) -> None:
        self.count = count
        self.calls: list = []
        self._lock = threading.Lock()

    def eval(self, script, numkeys, *keys_and_args):
        with self._lock:
            self.calls.append((numkeys, keys_and_args))
        return self.count


OPTIONS = RateLimitOptions(limit=5, window_size=timedelta(seconds=1))
KINDS = ["local", "redis"]


def _make_limiter(kind):
    if kind == "local":
        return LocalLimiter(OPTIONS)
    return RedisLimiter(FakeRedis(), OPTIONS)


@pytest.mark.parametrize("kind", KINDS)
def test_basic_functionality(kind):
    limiter = _make_limiter(kind)
    now = timecache.now()
    for i in range(1, 6):
        result = limiter.allow("test_key")
        assert result.allow
        assert result.limit == 5
        assert result.remaining == 5 - i
        assert result.reset_time - now >= timedelta(seconds=1) - timedelta(milliseconds=1)
    assert limiter.allow("test_key").allow is False


@pytest.mark.parametrize("kind", KINDS)
def test_different_keys(kind):
    limiter = _make_limiter(kind)
    results = [limiter.allow(f"key_{i}").allow for i in range(10)]
    assert results == [True] * 10


@pytest.mark.parametrize("kind", KINDS)
def test_window_reset(kind):
    limiter = _make_limiter(kind)
    results = [limiter.allow("reset_key").allow for _ in range(6)]
    assert results == [True] * 5 + [False]
    time.sleep(OPTIONS.window_size.total_seconds())
    assert limiter.allow("reset_key").allow is True


@pytest.mark.parametrize("kind", KINDS)
def test_concurrent_requests(kind):
    limiter = _make_limiter(kind)
    allowed = []
    lock = threading.Lock()

    def hit():
        result = limiter.allow("concurrent_key")
        if result.allow:
            with lock:
                allowed.append(1)

    threads = [threading.Thread(target=hit) for _ in range(100)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(allowed) == OPTIONS.limit


def test_redis_limiter_fails_open():
    limiter = RedisLimiter(BrokenRedis(), OPTIONS)
    result = limiter.allow("any")
    assert result.allow
    assert result.remaining == 5
    assert result.limit == 5


def test_middleware_basic_functionality():
    options = RateLimitOptions(
        limit_by="$client_ip",
        limit=3,
        window_size=timedelta(seconds=10),
        http_response_body="too many requests",
        strategy="local",
    )
    m = RateLimitingMiddleware(options)
    c = RequestContext()
    c.request.method = "GET"
    c.request.path = "/foo"

    m(c)
    assert c.response.status_code == 200
    assert c.response.headers.get("X-RateLimit-Limit") == "3"
    assert c.response.headers.get("X-RateLimit-Remaining") == "2"

    m(c)
    m(c)
    assert c.response.status_code == 200
    assert c.response.headers.get("X-RateLimit-Limit") == "3"
    assert c.response.headers.get("X-RateLimit-Remaining") == "0"

    m(c)
    assert c.response.status_code == 429
    assert c.response.headers.get("X-RateLimit-Limit") == "3"
    assert c.response.headers.get("X-RateLimit-Remaining") == "0"
    assert c.response.body == b"too many requests"
    assert c.is_aborted()


def test_middleware_skips_when_allowed_variable_set():
    options = RateLimitOptions(
        limit_by="$client_ip", limit=1, window_size=timedelta(seconds=10), strategy="local"
    )
    m = RateLimitingMiddleware(options)
    c = RequestContext()
    c.set(variable.ALLOW, True)
    for _ in range(3):
        m(c)
    assert c.response.status_code == 200
    assert c.response.headers.get("X-RateLimit-Limit") == ""


def test_middleware_rejects_zero_window():
    with pytest.raises(ValueError, match="window_size must be greater than 0"):
        RateLimitingMiddleware(RateLimitOptions(strategy="local", limit=1))


@pytest.mark.parametrize("strategy", ["bogus", StrategyMode.LOCAL_ASYNC_REDIS.value])
def test_middleware_rejects_unsupported_strategy(strategy):
    with pytest.raises(ValueError, match="is invalid"):
        RateLimitingMiddleware(
            RateLimitOptions(strategy=strategy, limit=1, window_size=timedelta(seconds=1))
        )


def test_middleware_unknown_redis_id():
    options = RateLimitOptions(
        strategy="redis", limit=1, window_size=timedelta(seconds=1), redis_id="missing-id"
    )
    with pytest.raises(ValueError, match="redis id 'missing-id' not found"):
        RateLimitingMiddleware(options)


def test_middleware_with_redis_strategy():
    register_redis_client("test-redis", FakeRedis())
    m = create_middleware(
        {
            "strategy": "redis",
            "limit": 2,
            "limit_by": "$client_ip",
            "window_size": "10s",
            "redis_id": "test-redis",
            "http_status": 503,
        }
    )
    c = RequestContext()
    m(c)
    m(c)
    assert c.response.headers.get("X-RateLimit-Remaining") == "0"
    m(c)
    assert c.response.status_code == 503


def test_create_middleware_parses_duration():
    m = create_middleware(
        {"strategy": "local", "limit": "7", "limit_by": "$client_ip", "window_size": "1m30s"}
    )
    assert m.options.window_size == timedelta(seconds=90)
    assert m.options.limit == 7
    assert m.options.http_status_code == 429


def test_registered_factory():
    factory = find_handler_by_type("rate-limiting")
    m = factory(
        {"strategy": "local", "limit": 1, "limit_by": "$client_ip", "window_size": "500ms"}
    )
    assert m.options.window_size == timedelta(milliseconds=500)


@pytest.mark.parametrize(
    "params, message",
    [
        ({}, "strategy is not found"),
        ({"strategy": "local"}, "limit is not found"),
        ({"strategy": "local", "limit": -1}, "limit is invalid"),
        ({"strategy": "local", "limit": 1}, "limit_by is not found"),
        ({"strategy": "local", "limit": 1, "limit_by": "$client_ip"}, "window_size is not found"),
        (
            {"strategy": "local", "limit": 1, "limit_by": "$client_ip", "window_size": "10"},
            "window_size is invalid",
        ),
        (
            {
                "strategy": "local",
                "limit": 1,
                "limit_by": "$client_ip",
                "window_size": "1s",
                "http_status": "abc",
            },
            "http_status is invalid",
        ),
        (
            {"strategy": "redis", "limit": 1, "limit_by": "$client_ip", "window_size": "1s"},
            "redis_id is not found",
        ),
    ],
)
def test_create_middleware_errors(params, message):
    with pytest.raises(ValueError, match=message):
        create_middleware(params)


def test_async_limiter_rejects_non_positive_tokens():
    limiter = LocalAsyncRedisLimiter(BrokenRedis(), OPTIONS)
    assert limiter.try_acquire(0) is False
    assert limiter.try_acquire(-1) is False


def test_async_limiter_counts_down_locally():
    options = RateLimitOptions(limit=2, limit_by="user", window_size=timedelta(seconds=1))
    limiter = LocalAsyncRedisLimiter(BrokenRedis(), options)
    assert [limiter.try_acquire(1) for _ in range(3)] == [True, True, False]


def test_async_limiter_syncs_with_redis():
    options = RateLimitOptions(limit=100, limit_by="user", window_size=timedelta(seconds=3))
    client = CountingRedis(count=150)
    limiter = LocalAsyncRedisLimiter(client, options)
    outcomes = []
    for _ in range(50):
        outcomes.append(limiter.try_acquire(1))
        if not outcomes[-1]:
            break
        time.sleep(0.02)
    assert outcomes[-1] is False
    numkeys, args = client.calls[0]
    assert numkeys == 1
    assert args == ("user", 100, 3)