"""In-memory sharded metric cache with a writeout queue."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

StatCallback = Callable[[str, float], None]

SHARD_COUNT = 1024
DEFAULT_MAX_SIZE = 1_000_000
REBUILD_INTERVAL = 0.1

_FNV_OFFSET = 2166136261
_FNV_PRIME = 16777619
_MASK32 = 0xFFFFFFFF


@dataclass
class Point:
    """A single datapoint."""

    value: float
    timestamp: int


@dataclass
class Points:
    """A metric name and its datapoints."""

    metric: str
    data: list[Point] = field(default_factory=list)

    def add(self, value: float, timestamp: int) -> "Points":
        """Append a datapoint and return self for chaining."""
        self.data.append(Point(value, timestamp))
        return self


def one_point(metric: str, value: float, timestamp: int) -> Points:
    """Build a Points holding exactly one datapoint."""
    return Points(metric, [Point(value, timestamp)])


class WriteStrategy(Enum):
    MAXIMUM_LENGTH = "max"
    TIMESTAMP_ORDER = "sorted"
    NOOP = "noop"


def fnv32(key: str) -> int:
    """32-bit FNV-1 hash of the UTF-8 bytes of key."""
    h = _FNV_OFFSET
    for byte in key.encode("utf-8"):
        h = (h * _FNV_PRIME) & _MASK32
        h ^= byte
    return h


class _Shard:
    __slots__ = ("lock", "items", "not_confirmed")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.items: dict[str, Points] = {}
        self.not_confirmed: list[Points] = []


class Cache:
    """Thread-safe metric cache split into shards to reduce lock contention."""

    def __init__(self) -> None:
        self._shards = [_Shard() for _ in range(SHARD_COUNT)]
        self._lock = threading.Lock()
        self._write_strategy = WriteStrategy.NOOP
        self._queue_last_build: float | None = None
        self._max_size = DEFAULT_MAX_SIZE

        self._stat_lock = threading.Lock()
        self._size = 0
        self._queue_build_count = 0
        self._queue_build_time_ms = 0
        self._queue_writeout_time = 0
        self._overflow_count = 0
        self._query_count = 0

        self._writeout_queue = WriteoutQueue(self)

    def set_write_strategy(self, name: str) -> None:
        """Select the writeout order: "max", "sorted" or "noop"."""
        try:
            strategy = WriteStrategy(name)
        except ValueError:
            raise ValueError(
                f"Unknown write strategy '{name}', should be one of: max, sorted, noop"
            ) from None
        with self._lock:
            self._write_strategy = strategy

    def set_max_size(self, max_size: int) -> None:
        """Set the maximum number of points held; 0 disables the limit."""
        self._max_size = int(max_size)

    def stat(self, send: StatCallback) -> None:
        """Report counters; resettable counters are zeroed after sending."""
        send("size", float(self.size()))
        send("metrics", float(len(self)))
        send("maxSize", float(self._max_size))

        with self._stat_lock:
            queries, self._query_count = self._query_count, 0
            overflow, self._overflow_count = self._overflow_count, 0
            build_count, self._queue_build_count = self._queue_build_count, 0
            build_ms, self._queue_build_time_ms = self._queue_build_time_ms, 0
            writeout_time = self._queue_writeout_time

        send("queries", float(queries))
        send("overflow", float(overflow))
        send("queueBuildCount", float(build_count))
        send("queueBuildTimeMs", float(build_ms))
        send("queueWriteoutTime", float(writeout_time))

    def _shard(self, key: str) -> _Shard:
        return self._shards[fnv32(key) % SHARD_COUNT]

    def get(self, key: str) -> list[Point]:
        """Return in-flight and cached points for key, in-flight first."""
        with self._stat_lock:
            self._query_count += 1

        shard = self._shard(key)
        result: list[Point] = []
        with shard.lock:
            for p in shard.not_confirmed:
                if p.metric == key:
                    result.extend(p.data)
            cached = shard.items.get(key)
            if cached is not None:
                result.extend(cached.data)
        return result

    def confirm(self, points: Points) -> None:
        """Forget an in-flight Points object once it has been persisted."""
        shard = self._shard(points.metric)
        with shard.lock:
            shard.not_confirmed = [p for p in shard.not_confirmed if p is not points]

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.items)
        return total

    def size(self) -> int:
        """Number of points currently held in the cache."""
        with self._stat_lock:
            return self._size

    def add(self, points: Points) -> None:
        """Store points, merging with any cached data for the same metric."""
        count = len(points.data)

        if self._max_size > 0 and self.size() > self._max_size:
            with self._stat_lock:
                self._overflow_count += count
            return

        shard = self._shard(points.metric)
        with shard.lock:
            existing = shard.items.get(points.metric)
            if existing is not None:
                existing.data.extend(points.data)
            else:
                shard.items[points.metric] = points

        with self._stat_lock:
            self._size += count

    def _take(self, key: str, keep_in_flight: bool) -> Points | None:
        shard = self._shard(key)
        with shard.lock:
            points = shard.items.pop(key, None)
            if points is not None and keep_in_flight:
                shard.not_confirmed.append(points)
        if points is not None:
            with self._stat_lock:
                self._size -= len(points.data)
        return points

    def pop(self, key: str) -> Points | None:
        """Remove and return the cached points for key, or None."""
        return self._take(key, keep_in_flight=False)

    def pop_not_confirmed(self, key: str) -> Points | None:
        """Remove points for key but keep them visible until confirmed."""
        return self._take(key, keep_in_flight=True)

    def make_queue(self) -> deque[str]:
        """Build an ordered queue of metric names according to the write strategy."""
        with self._lock:
            strategy = self._write_strategy
            prev_build = self._queue_last_build

        if prev_build is not None:
            with self._stat_lock:
                self._queue_writeout_time = int(time.monotonic() - prev_build)

        start = time.monotonic()
        try:
            entries: list[tuple[str, int]] = []
            for shard in self._shards:
                with shard.lock:
                    for p in shard.items.values():
                        entries.append((p.metric, _order_key(strategy, p)))

            if strategy is WriteStrategy.MAXIMUM_LENGTH:
                entries.sort(key=lambda e: e[1], reverse=True)
            elif strategy is WriteStrategy.TIMESTAMP_ORDER:
                entries.sort(key=lambda e: e[1])

            return deque(metric for metric, _ in entries)
        finally:
            elapsed_ms = int((time.monotonic() - start) * 1000)
            with self._stat_lock:
                self._queue_build_time_ms += elapsed_ms
                self._queue_build_count += 1
            with self._lock:
                self._queue_last_build = time.monotonic()

    def writeout_queue(self) -> "WriteoutQueue":
        return self._writeout_queue


def _order_key(strategy: WriteStrategy, points: Points) -> int:
    if strategy is WriteStrategy.MAXIMUM_LENGTH:
        return len(points.data)
    if strategy is WriteStrategy.TIMESTAMP_ORDER:
        return points.data[0].timestamp
    return 0


class _Rebuild:
    """One-shot queue rebuild that waits until its scheduled time."""

    def __init__(self, owner: "WriteoutQueue", not_before: float | None) -> None:
        self._owner = owner
        self._not_before = not_before
        self._lock = threading.Lock()
        self._started = False
        self.done = threading.Event()

    def __call__(self, abort: threading.Event | None) -> threading.Event:
        with self._lock:
            run, self._started = not self._started, True
        if run:
            if self._not_before is not None:
                delay = self._not_before - time.monotonic()
                if delay > 0:
                    if abort is not None:
                        abort.wait(delay)
                    else:
                        time.sleep(delay)
            self._owner._update()
            self.done.set()
        return self.done


class WriteoutQueue:
    """Hands out metric names to persisters, rebuilding from the cache when empty."""

    def __init__(self, cache: Cache) -> None:
        self._cache = cache
        self._lock = threading.Lock()
        self._queue: deque[str] = deque()
        self._rebuild = _Rebuild(self, None)

    def _update(self) -> None:
        queue = self._cache.make_queue()
        with self._lock:
            self._queue = queue
            self._rebuild = _Rebuild(self, time.monotonic() + REBUILD_INTERVAL)

    def get(self, abort: threading.Event | None = None) -> str | None:
        """Return the next metric to write, or None once abort is set."""
        while True:
            with self._lock:
                queue = self._queue
                rebuild = self._rebuild
            try:
                return queue.popleft()
            except IndexError:
                pass
            if abort is not None and abort.is_set():
                return None
            done = rebuild(abort)
            if abort is None:
                done.wait()
                continue
            while not done.wait(0.01):
                if abort.is_set():
                    return None