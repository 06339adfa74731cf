import pytest

from carbonlite.api import CacheApi
from carbonlite.cache import Cache, Point, one_point


@pytest.fixture
def cache():
    c = Cache()
    c.add(one_point("hello.world", 42, 10))
    c.add(one_point("hello.world", 15, 12))
    c.add(one_point("foo.bar", 1.5, 20))
    return c


def _collect(api):
    stats = {}
    api.stat(lambda name, value: stats.__setitem__(name, value))
    return stats


def test_query_returns_present_metrics_in_request_order(cache):
    api = CacheApi(cache)
    result = api.cache_query(["foo.bar", "missing.metric", "hello.world"])
    assert [m.metric for m in result] == ["foo.bar", "hello.world"]
    assert result[0].data == [Point(1.5, 20)]
    assert result[1].data == [Point(42, 10), Point(15, 12)]


def test_query_does_not_remove_points(cache):
    api = CacheApi(cache)
    api.cache_query(["hello.world"])
    assert cache.size() == 3
    assert cache.get("hello.world") == [Point(42, 10), Point(15, 12)]


def test_query_sees_in_flight_points(cache):
    api = CacheApi(cache)
    cache.pop_not_confirmed("foo.bar")
    result = api.cache_query(["foo.bar"])
    assert [(m.metric, m.data) for m in result] == [("foo.bar", [Point(1.5, 20)])]


def test_empty_query(cache):
    api = CacheApi(cache)
    assert api.cache_query([]) == []
    stats = _collect(api)
    assert stats["cacheRequests"] == 1.0
    assert stats["cacheRequestMetrics"] == 0.0


def test_stat_counts_and_resets(cache):
    api = CacheApi(cache)
    requested = ["hello.world", "missing.metric", "foo.bar"]
    result = api.cache_query(requested)
    api.cache_query(["missing.metric"])

    stats = _collect(api)
    assert stats == {
        "cacheRequests": 2.0,
        "cacheRequestMetrics": float(len(requested) + 1),
        "cacheResponseMetrics": float(len(result)),
        "cacheResponsePoints": float(sum(len(m.data) for m in result)),
    }

    assert set(_collect(api).values()) == {0.0}