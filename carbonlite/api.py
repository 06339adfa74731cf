"""Cache query service: looks up cached points for a list of metrics."""

from __future__ import annotations

import threading
from typing import Iterable

from carbonlite.cache import Cache, Point, Points, StatCallback

_MASK32 = 0xFFFFFFFF


class CacheApi:
    """Answers cache queries and counts what it served."""

    def __init__(self, cache: Cache) -> None:
        self._cache = cache
        self._lock = threading.Lock()
        self._requests = 0
        self._request_metrics = 0
        self._response_metrics = 0
        self._response_points = 0

    def cache_query(self, metrics: Iterable[str]) -> list[Points]:
        """Return cached points for each requested metric that has any, in request order."""
        names = list(metrics)
        result: list[Points] = []
        point_count = 0

        for name in names:
            data = self._cache.get(name)
            if data:
                point_count += len(data)
                result.append(
                    Points(name, [Point(p.value, int(p.timestamp) & _MASK32) for p in data])
                )

        with self._lock:
            self._requests = (self._requests + 1) & _MASK32
            self._request_metrics = (self._request_metrics + len(names)) & _MASK32
            self._response_metrics = (self._response_metrics + len(result)) & _MASK32
            self._response_points = (self._response_points + point_count) & _MASK32

        return result

    def stat(self, send: StatCallback) -> None:
        """Report and reset the request counters."""
        with self._lock:
            values = [
                ("cacheRequests", self._requests),
                ("cacheRequestMetrics", self._request_metrics),
                ("cacheResponseMetrics", self._response_metrics),
                ("cacheResponsePoints", self._response_points),
            ]
            self._requests = 0
            self._request_metrics = 0
            self._response_metrics = 0
            self._response_points = 0
        for name, value in values:
            send(name, float(value))