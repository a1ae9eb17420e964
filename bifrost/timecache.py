"""A clock whose reading is refreshed in the background at a fixed interval."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Optional

_DEFAULT_INTERVAL = 1.0
_MIN_INTERVAL = 0.001


def _current() -> datetime:
    return datetime.now().astimezone()


class TimeCache:
    """Holds the current time and refreshes it every ``interval`` seconds.

    An interval of 0 means one second; anything shorter than a millisecond
    is raised to one millisecond.
    """

    def __init__(self, interval: float = 0.0) -> None:
        if interval == 0:
            interval = _DEFAULT_INTERVAL
        elif interval < _MIN_INTERVAL:
            interval = _MIN_INTERVAL
        self._interval = float(interval)
        self._now = _current()
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            target=self._refresh, name="timecache-refresh", daemon=True
        )
        self._thread.start()

    @property
    def interval(self) -> float:
        """Seconds between refreshes."""
        return self._interval

    def now(self) -> datetime:
        """Return the cached time."""
        return self._now

    def close(self) -> None:
        """Stop refreshing the cached time."""
        self._stopped.set()
        self._thread.join(timeout=self._interval + 1.0)

    def __enter__(self) -> "TimeCache":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _refresh(self) -> None:
        while not self._stopped.wait(self._interval):
            self._now = _current()


class _DefaultClock:
    """Holds the process-wide cache used by :func:`now`."""

    __slots__ = ("cache",)

    def __init__(self) -> None:
        self.cache: Optional[TimeCache] = None


_default = _DefaultClock()
_default_lock = threading.Lock()


def set_default(cache: Optional[TimeCache]) -> None:
    """Make ``cache`` the clock used by :func:`now`; ``None`` clears it."""
    with _default_lock:
        _default.cache = cache


def now() -> datetime:
    """Return the time from the default cache, or the real time if none is set."""
    cache = _default.cache
    if cache is None:
        return _current()
    return cache.now()