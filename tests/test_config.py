import pytest

from carbonlite.config import (
    DEFAULT_LOG_FILE,
    METRIC_ENDPOINT_LOCAL,
    Config,
    ConfigError,
    format_duration,
    new_config,
    parse_duration,
    read_config,
    validate_config,
)


def _write(tmp_path, body):
    path = tmp_path / "daemon.conf"
    path.write_text(body, encoding="utf-8")
    return path


@pytest.mark.parametrize("text", ["1m0s", "5m0s", "1h0m0s", "30s", "10ms", "1.5s", "-2s"])
def test_duration_round_trip(text):
    assert format_duration(parse_duration(text)) == text


def test_format_duration_minute():
    assert format_duration(60) == "1m0s"


def test_format_duration_zero():
    assert format_duration(0) == "0s"


def test_parse_duration_equivalences():
    assert parse_duration("1h30m") == parse_duration("90m")
    assert parse_duration("1000ms") == parse_duration("1s")
    assert parse_duration("-1.5s") == -parse_duration("1.5s")
    assert parse_duration("0") == 0.0


@pytest.mark.parametrize("text", ["", "10", "abc", ".s", "1x", "-"])
def test_parse_duration_rejects_invalid(text):
    with pytest.raises(ValueError):
        parse_duration(text)


def test_new_config_defaults():
    cfg = new_config()
    assert cfg.common.graph_prefix == "carbon.agents.{host}"
    assert cfg.common.metric_endpoint == METRIC_ENDPOINT_LOCAL
    assert cfg.cache.max_size == 1000000
    assert cfg.cache.write_strategy == "max"
    assert cfg.grpc.listen == "127.0.0.1:7003"
    assert cfg.carbonlink.listen == "127.0.0.1:7002"
    assert cfg.carbonlink.read_timeout == 30
    assert cfg.carbonserver.scan_frequency == 300
    assert cfg.whisper.enabled is True
    assert cfg.tags.enabled is False


def test_new_config_instances_are_independent():
    first = new_config()
    second = new_config()
    first.prometheus.labels["env"] = "test"
    first.carbonserver.stats_percentiles.append(99)
    assert second.prometheus.labels == {}
    assert second.carbonserver.stats_percentiles == []


def test_read_config_without_file_uses_defaults():
    cfg = read_config(None)
    assert cfg.logging == [{"file": DEFAULT_LOG_FILE}]
    assert cfg.cache == new_config().cache


def test_read_config_overrides_values(tmp_path):
    path = _write(
        tmp_path,
        "[common]\n"
        'graph-prefix = "custom.{host}"\n'
        'metric-interval = "10s"\n'
        "unknown-key = 1\n"
        "[cache]\n"
        "max-size = 5\n"
        'write-strategy = "sorted"\n'
        "[carbonserver]\n"
        "stats-percentiles = [99, 95]\n"
        "[prometheus]\n"
        'labels = { env = "test" }\n'
        "[receiver.kafka]\n"
        'brokers = ["localhost:9092"]\n'
        "[udp]\n"
        'listen = ":2003"\n',
    )
    cfg = read_config(path)
    assert cfg.common.graph_prefix == "custom.{host}"
    assert cfg.common.metric_interval == parse_duration("10s")
    assert cfg.cache.max_size == 5
    assert cfg.cache.write_strategy == "sorted"
    assert cfg.carbonserver.stats_percentiles == [99, 95]
    assert cfg.prometheus.labels == {"env": "test"}
    assert cfg.receiver == {"kafka": {"brokers": ["localhost:9092"]}}
    assert cfg.udp == {"listen": ":2003"}
    assert cfg.grpc == new_config().grpc


def test_read_config_single_logging_table(tmp_path):
    path = _write(tmp_path, '[common]\nuser = "carbon"\n[logging]\nfile = "/tmp/app.log"\n')
    cfg = read_config(path)
    assert len(cfg.logging) == 1
    assert cfg.logging[0]["file"] == "/tmp/app.log"


def test_read_config_deprecated_logging_options(tmp_path):
    path = _write(tmp_path, '[common]\nlogfile = "/tmp/app.log"\nlog-level = "debug"\n')
    cfg = read_config(path)
    assert cfg.logging == [{"file": "/tmp/app.log", "level": "debug"}]


@pytest.mark.parametrize(
    "body",
    [
        '[common]\nmetric-interval = "soon"\n',
        '[cache]\nmax-size = "big"\n',
        "[cache]\nmax-size = -1\n",
        "[whisper]\nenabled = 1\n",
        "[common\n",
        "logging = 3\n",
    ],
)
def test_read_config_rejects_bad_values(tmp_path, body):
    with pytest.raises(ConfigError):
        read_config(_write(tmp_path, body))


def test_read_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_config(tmp_path / "absent.conf")


def test_validate_replaces_host():
    cfg = validate_config(new_config(), "host.example.com")
    assert cfg.common.graph_prefix == "carbon.agents.host_example_com"


@pytest.mark.parametrize("strategy", ["max", "sorted", "noop"])
def test_validate_accepts_write_strategies(strategy):
    cfg = new_config()
    cfg.cache.write_strategy = strategy
    assert validate_config(cfg, "node").cache.write_strategy == strategy


def test_validate_rejects_unknown_write_strategy():
    cfg = new_config()
    cfg.cache.write_strategy = "fast"
    with pytest.raises(ConfigError):
        validate_config(cfg, "node")


def test_validate_empty_endpoint_becomes_local():
    cfg = new_config()
    cfg.common.metric_endpoint = ""
    assert validate_config(cfg, "node").common.metric_endpoint == METRIC_ENDPOINT_LOCAL


@pytest.mark.parametrize("endpoint", ["tcp://127.0.0.1:2003", "udp://127.0.0.1:2003"])
def test_validate_accepts_network_endpoints(endpoint):
    cfg = new_config()
    cfg.common.metric_endpoint = endpoint
    assert validate_config(cfg, "node").common.metric_endpoint == endpoint


def test_validate_rejects_other_schemes():
    cfg = new_config()
    cfg.common.metric_endpoint = "http://127.0.0.1:2003"
    with pytest.raises(ConfigError, match='"http" is unsupported'):
        validate_config(cfg, "node")


def test_validate_is_idempotent():
    cfg = Config()
    validate_config(cfg, "a.b")
    once = cfg.common.graph_prefix
    validate_config(cfg, "c.d")
    assert cfg.common.graph_prefix == once