import time
from datetime import datetime, timedelta

import pytest

from bifrost import timecache
from bifrost.timecache import TimeCache


@pytest.fixture
def cache_factory():
    created = []

    def make(interval):
        tc = TimeCache(interval)
        created.append(tc)
        return tc

    yield make
    for tc in created:
        tc.close()


def test_returned_time_is_not_zero(cache_factory):
    tc = cache_factory(1.0)
    assert tc.now() > datetime(1970, 1, 2).astimezone()


def test_time_is_updated_after_refresh(cache_factory):
    tc = cache_factory(0.05)
    now1 = tc.now()
    time.sleep(0.3)
    now2 = tc.now()
    assert now2 > now1


def test_time_within_interval(cache_factory):
    tc = cache_factory(1.0)
    now1 = tc.now()
    time.sleep(0.001)
    now2 = tc.now()
    assert now1 + timedelta(milliseconds=1) > now2


def test_zero_interval_defaults_to_one_second(cache_factory):
    assert cache_factory(0).interval == 1.0


def test_tiny_interval_is_raised_to_one_millisecond(cache_factory):
    assert cache_factory(0.0000001).interval == 0.001


def test_close_stops_refreshing():
    tc = TimeCache(0.01)
    tc.close()
    frozen = tc.now()
    time.sleep(0.05)
    assert tc.now() == frozen


def test_module_now_uses_default_cache(cache_factory):
    tc = cache_factory(1.0)
    timecache.set_default(tc)
    try:
        assert timecache.now() == tc.now()
    finally:
        timecache.set_default(None)


def test_module_now_without_default_is_real_time():
    timecache.set_default(None)
    before = datetime.now().astimezone()
    value = timecache.now()
    after = datetime.now().astimezone()
    assert before <= value <= after