# carbonlite

An in-memory cache for Graphite metrics, together with the pieces that sit
around it: a carbonlink listener that answers `cache-query` requests from a
Graphite web front end, an in-process cache query API, and a TOML
configuration loader.

## Installation

```
pip install .
```

Python 3.11 or later is required. The package has no runtime dependencies.
To run the tests, install the `test` extra and run `pytest`.

## The cache (`carbonlite.cache`)

`Cache` stores `Points` (a metric name and a list of `Point(value,
timestamp)`) per metric, split into 1024 shards. Points are added with
`Cache.add`, read with `Cache.get`, and handed out for writing through the
writeout queue:

```python
from carbonlite.cache import Cache, one_point

cache = Cache()
cache.set_write_strategy("max")   # "max", "sorted" or "noop"
cache.set_max_size(1_000_000)     # 0 disables the limit

cache.add(one_point("hello.world", 42, 10))
cache.add(one_point("hello.world", 15, 12))

metric = cache.writeout_queue().get(None)   # "hello.world"
points = cache.pop_not_confirmed(metric)    # still visible to get()
# ... write the points somewhere ...
cache.confirm(points)                       # now gone from the cache
```

`Cache.pop(key)` removes a metric outright and returns its `Points`, or
`None`. `len(cache)` is the number of metrics held, `cache.size()` the
number of points.

The write strategy orders the writeout queue:

* `max` – metrics with the most points first;
* `sorted` – metrics with the oldest first point first;
* `noop` – no particular order (the default of a new `Cache`).

An unknown strategy name raises `ValueError`.

`WriteoutQueue.get(abort)` returns the next metric name, rebuilding the
queue from the cache when it runs empty (at most once every 100 ms). Pass a
`threading.Event` as `abort`; once it is set, `get` returns `None`. With
`None` as `abort` it waits until a metric is available.

Once the cache holds more points than its maximum size, further points are
dropped and counted as overflow. `Cache.stat(send)` reports `size`,
`metrics`, `maxSize`, `queries`, `overflow`, `queueBuildCount`,
`queueBuildTimeMs` and `queueWriteoutTime` by calling `send(name, value)`;
the query, overflow and queue-build counters are reset after each report.

## Carbonlink (`carbonlite.carbonlink`)

`CarbonlinkListener` serves the length-framed pickle protocol that Graphite
web uses to read points still held in the cache:

```python
from carbonlite.carbonlink import CarbonlinkListener

with CarbonlinkListener(cache, read_timeout=30.0) as listener:
    listener.listen("127.0.0.1", 7002)   # port 0 picks a free port
    print(listener.addr())
    ...
```

Each connection may send any number of `cache-query` requests. A request
that cannot be read within the read timeout, or cannot be parsed, closes the
connection; a request of any other type gets an error reply and then the
connection is closed. Frames are limited to 1 MiB.

The helpers `parse_carbonlink_request`, `pack_reply` and `error_reply`
decode and encode the messages themselves; a malformed request raises
`BadPickleError`.

## Query API (`carbonlite.api`)

`CacheApi(cache).cache_query(metrics)` returns a list of `Points`, one for
each requested metric that has cached data, in request order.
`CacheApi.stat(send)` reports and resets `cacheRequests`,
`cacheRequestMetrics`, `cacheResponseMetrics` and `cacheResponsePoints`.

## Configuration (`carbonlite.config`)

`read_config(filename)` reads a TOML file on top of the defaults from
`new_config()`; with no filename it returns the defaults. Keys use dashes
(`write-strategy`, `metric-interval`); durations are strings such as `"1m"`,
`"300s"` or `"1m30s"`, converted to seconds by `parse_duration` and written
back by `format_duration`. A single `[logging]` table is accepted as well as
`[[logging]]` arrays, and the deprecated `common.logfile` and
`common.log-level` settings are turned into one logging entry.

`validate_config(config, hostname=None)` fills `{host}` in
`common.graph-prefix` (dots in the host name become underscores; the local
host name is used when none is given), checks that the cache write strategy
is `max`, `sorted` or `noop`, and that `common.metric-endpoint` is `local`
or a `tcp://` or `udp://` URL. Unreadable TOML, wrongly typed values and
invalid settings raise `ConfigError`.

## What this package does not do

carbonlite is a set of building blocks, not a running daemon. It has no
command to start, and it does not:

* receive metrics over TCP, UDP or the pickle protocol;
* write points to disk (no whisper persister) or dump and restore the cache;
* expose the query API over the network – `CacheApi` is called in-process;
* collect and send its own statistics on a timer.

The configuration loader reads the sections for these features (`whisper`,
`udp`, `tcp`, `pickle`, `receiver`, `carbonserver`, `dump`, `tags`,
`prometheus`, …) so that files written for a full deployment load, but
nothing in the package acts on them.