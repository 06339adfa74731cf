"""Daemon configuration: defaults, TOML loading and validation."""

from __future__ import annotations

import logging
import os
import re
import socket
import tomllib
from dataclasses import dataclass, field, fields
from fractions import Fraction
from typing import Any
from urllib.parse import urlsplit

logger = logging.getLogger("config")

METRIC_ENDPOINT_LOCAL = "local"
DEFAULT_LOG_FILE = "/var/log/carbonlite/carbonlite.log"
WRITE_STRATEGIES = ("max", "sorted", "noop")


class ConfigError(ValueError):
    """The configuration cannot be loaded or is not valid."""


_NANOSECOND_UNITS = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}
_COMPONENT = re.compile(r"(\d*)(?:\.(\d*))?(ns|us|\u00b5s|\u03bcs|ms|s|m|h)")


def parse_duration(text: str) -> float:
    """Parse a duration such as "1m30s" or "250ms" into seconds."""
    rest = text
    negative = False
    if rest and rest[0] in "+-":
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return 0.0
    if not rest:
        raise ValueError(f'time: invalid duration "{text}"')

    total = Fraction(0)
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        if match is None:
            raise ValueError(f'time: invalid duration "{text}"')
        whole, frac, unit = match.group(1), match.group(2) or "", match.group(3)
        if not whole and not frac:
            raise ValueError(f'time: invalid duration "{text}"')
        value = Fraction(int(whole or "0"))
        if frac:
            value += Fraction(int(frac), 10 ** len(frac))
        total += value * _NANOSECOND_UNITS[unit]
        pos = match.end()

    nanoseconds = int(total)
    if negative:
        nanoseconds = -nanoseconds
    return nanoseconds / 1_000_000_000


def _fixed(value: int, digits: int) -> str:
    whole, frac = divmod(value, 10**digits)
    frac_text = f"{frac:0{digits}d}".rstrip("0")
    return f"{whole}.{frac_text}" if frac_text else str(whole)


def format_duration(seconds: float) -> str:
    """Format seconds the way durations are written in the config, e.g. "1m0s"."""
    nanoseconds = round(seconds * 1_000_000_000)
    if nanoseconds == 0:
        return "0s"
    sign = "-" if nanoseconds < 0 else ""
    u = abs(nanoseconds)

    if u < 1_000_000_000:
        if u < 1_000:
            return f"{sign}{u}ns"
        if u < 1_000_000:
            return f"{sign}{_fixed(u, 3)}\u00b5s"
        return f"{sign}{_fixed(u, 6)}ms"

    text = f"{_fixed(u % 60_000_000_000, 9)}s"
    minutes = u // 60_000_000_000
    if minutes:
        text = f"{minutes % 60}m{text}"
        hours = minutes // 60
        if hours:
            text = f"{hours}h{text}"
    return sign + text


def _setting(kind: str, default: Any = None, factory: Any = None) -> Any:
    metadata = {"kind": kind}
    if factory is not None:
        return field(default_factory=factory, metadata=metadata)
    return field(default=default, metadata=metadata)


@dataclass
class CommonConfig:
    user: str = _setting("str", "carbon")
    logfile: str | None = _setting("opt_str")
    log_level: str | None = _setting("opt_str")
    graph_prefix: str = _setting("str", "carbon.agents.{host}")
    metric_interval: float = _setting("duration", 60.0)
    metric_endpoint: str = _setting("str", METRIC_ENDPOINT_LOCAL)
    max_cpu: int = _setting("int", 1)


@dataclass
class WhisperConfig:
    data_dir: str = _setting("str", "/var/lib/graphite/whisper/")
    schemas_file: str = _setting("str", "/etc/carbonlite/storage-schemas.conf")
    aggregation_file: str = _setting("str", "")
    workers: int = _setting("int", 1)
    max_updates_per_second: int = _setting("int", 0)
    max_creates_per_second: int = _setting("int", 0)
    hard_max_creates_per_second: bool = _setting("bool", False)
    sparse_create: bool = _setting("bool", False)
    flock: bool = _setting("bool", False)
    compressed: bool = _setting("bool", False)
    enabled: bool = _setting("bool", True)
    hash_filenames: bool = _setting("bool", True)


@dataclass
class CacheConfig:
    max_size: int = _setting("uint", 1_000_000)
    write_strategy: str = _setting("str", "max")


@dataclass
class CarbonlinkConfig:
    listen: str = _setting("str", "127.0.0.1:7002")
    enabled: bool = _setting("bool", True)
    read_timeout: float = _setting("duration", 30.0)


@dataclass
class GrpcConfig:
    listen: str = _setting("str", "127.0.0.1:7003")
    enabled: bool = _setting("bool", True)


@dataclass
class TagsConfig:
    enabled: bool = _setting("bool", False)
    tagdb_url: str = _setting("str", "http://127.0.0.1:8000")
    tagdb_timeout: float = _setting("duration", 1.0)
    tagdb_chunk_size: int = _setting("int", 32)
    tagdb_update_interval: int = _setting("uint", 100)
    local_dir: str = _setting("str", "/var/lib/graphite/tagging/")


@dataclass
class CarbonserverConfig:
    listen: str = _setting("str", "127.0.0.1:8080")
    enabled: bool = _setting("bool", False)
    read_timeout: float = _setting("duration", 60.0)
    idle_timeout: float = _setting("duration", 60.0)
    write_timeout: float = _setting("duration", 60.0)
    scan_frequency: float = _setting("duration", 300.0)
    query_cache_enabled: bool = _setting("bool", True)
    query_cache_size_mb: int = _setting("int", 0)
    find_cache_enabled: bool = _setting("bool", True)
    buckets: int = _setting("int", 10)
    max_globs: int = _setting("int", 100)
    fail_on_max_globs: bool = _setting("bool", False)
    metrics_as_counters: bool = _setting("bool", False)
    trigram_index: bool = _setting("bool", True)
    internal_stats_dir: str = _setting("str", "")
    stats_percentiles: list[int] = _setting("int_list", factory=list)


@dataclass
class PprofConfig:
    listen: str = _setting("str", "127.0.0.1:7007")
    enabled: bool = _setting("bool", False)


@dataclass
class DumpConfig:
    enabled: bool = _setting("bool", False)
    path: str = _setting("str", "/var/lib/graphite/dump/")
    restore_per_second: int = _setting("int", 0)


@dataclass
class PrometheusConfig:
    enabled: bool = _setting("bool", False)
    endpoint: str = _setting("str", "/metrics")
    labels: dict[str, str] = _setting("str_map", factory=dict)


@dataclass
class Config:
    """All daemon settings, one attribute per config section."""

    common: CommonConfig = field(default_factory=CommonConfig)
    whisper: WhisperConfig = field(default_factory=WhisperConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    udp: dict[str, Any] = field(default_factory=dict)
    tcp: dict[str, Any] = field(default_factory=dict)
    pickle: dict[str, Any] = field(default_factory=dict)
    receiver: dict[str, dict[str, Any]] = field(default_factory=dict)
    carbonlink: CarbonlinkConfig = field(default_factory=CarbonlinkConfig)
    grpc: GrpcConfig = field(default_factory=GrpcConfig)
    tags: TagsConfig = field(default_factory=TagsConfig)
    carbonserver: CarbonserverConfig = field(default_factory=CarbonserverConfig)
    dump: DumpConfig = field(default_factory=DumpConfig)
    pprof: PprofConfig = field(default_factory=PprofConfig)
    logging: list[dict[str, Any]] = field(default_factory=list)
    prometheus: PrometheusConfig = field(default_factory=PrometheusConfig)


_SECTIONS = (
    "common", "whisper", "cache", "carbonlink", "grpc",
    "tags", "carbonserver", "dump", "pprof", "prometheus",
)
_RAW_SECTIONS = ("udp", "tcp", "pickle")


def new_config() -> Config:
    """A configuration holding every default value."""
    return Config()


def _new_logging_config() -> dict[str, Any]:
    return {"file": DEFAULT_LOG_FILE}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _convert(kind: str, value: Any, where: str) -> Any:
    if kind in ("str", "opt_str"):
        if isinstance(value, str):
            return value
        raise ConfigError(f"{where}: expected a string")
    if kind == "int":
        if _is_int(value):
            return value
        raise ConfigError(f"{where}: expected an integer")
    if kind == "uint":
        if _is_int(value) and value >= 0:
            return value
        raise ConfigError(f"{where}: expected a non-negative integer")
    if kind == "bool":
        if isinstance(value, bool):
            return value
        raise ConfigError(f"{where}: expected a boolean")
    if kind == "duration":
        if not isinstance(value, str):
            raise ConfigError(f"{where}: expected a duration string")
        try:
            return parse_duration(value)
        except ValueError as exc:
            raise ConfigError(f"{where}: {exc}") from None
    if kind == "int_list":
        if isinstance(value, list) and all(_is_int(item) for item in value):
            return list(value)
        raise ConfigError(f"{where}: expected a list of integers")
    if kind == "str_map":
        if isinstance(value, dict) and all(
            isinstance(item, str) for item in value.values()
        ):
            return dict(value)
        raise ConfigError(f"{where}: expected a table of strings")
    raise ConfigError(f"{where}: unsupported setting kind {kind!r}")


def _apply_section(section: Any, table: Any, name: str) -> None:
    if not isinstance(table, dict):
        raise ConfigError(f"{name}: expected a table")
    by_key = {f.name.replace("_", "-"): f for f in fields(section)}
    for key, value in table.items():
        setting = by_key.get(key)
        if setting is None:
            continue
        setattr(section, setting.name, _convert(setting.metadata["kind"], value, f"{name}.{key}"))


def _apply(config: Config, document: dict[str, Any]) -> None:
    for name in _SECTIONS:
        if name in document:
            _apply_section(getattr(config, name), document[name], name)

    for name in _RAW_SECTIONS:
        if name in document:
            table = document[name]
            if not isinstance(table, dict):
                raise ConfigError(f"{name}: expected a table")
            getattr(config, name).update(table)

    if "receiver" in document:
        receivers = document["receiver"]
        if not isinstance(receivers, dict):
            raise ConfigError("receiver: expected a table")
        for receiver_name, options in receivers.items():
            if not isinstance(options, dict):
                raise ConfigError(f"receiver.{receiver_name}: expected a table")
            config.receiver[receiver_name] = dict(options)

    if "logging" in document:
        entries = document["logging"]
        if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
            raise ConfigError("logging: expected an array of tables")
        config.logging = [dict(entry) for entry in entries]


def read_config(filename: str | os.PathLike[str] | None = None) -> Config:
    """Load settings from a TOML file over the defaults; no file gives the defaults."""
    config = new_config()
    if filename:
        with open(filename, encoding="utf-8") as handle:
            body = handle.read()
        body = body.replace("\n[logging]\n", "\n[[logging]]\n")
        try:
            document = tomllib.loads(body)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(str(exc)) from None
        _apply(config, document)

    common = config.common
    if common.log_level is not None or common.logfile is not None:
        logger.warning(
            "`common.log-level` and `common.logfile` are deprecated. "
            "Use `logging` config section"
        )
        entry = _new_logging_config()
        if common.logfile is not None:
            entry["file"] = common.logfile
        if common.log_level is not None:
            entry["level"] = common.log_level
        config.logging = [entry]

    if not config.logging:
        config.logging.append(_new_logging_config())

    return config


def _local_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "localhost"


def validate_config(config: Config, hostname: str | None = None) -> Config:
    """Resolve the graph prefix and check settings; updates and returns config."""
    if hostname is None:
        hostname = _local_hostname()
    host = hostname.replace(".", "_")
    config.common.graph_prefix = config.common.graph_prefix.replace("{host}", host)

    if config.cache.write_strategy not in WRITE_STRATEGIES:
        raise ConfigError('only "max", "sorted" or "noop" write-strategy is supported')

    if config.common.metric_endpoint == "":
        config.common.metric_endpoint = METRIC_ENDPOINT_LOCAL

    endpoint = config.common.metric_endpoint
    if endpoint != METRIC_ENDPOINT_LOCAL:
        try:
            scheme = urlsplit(endpoint).scheme
        except ValueError as exc:
            raise ConfigError(f"common.metric-endpoint parse error: {exc}") from None
        if scheme not in ("tcp", "udp"):
            raise ConfigError(
                "common.metric-endpoint supports only tcp and udp protocols. "
                f'"{scheme}" is unsupported'
            )

    return config