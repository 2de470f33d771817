from pathlib import Path

import pytest

from config_loader import (
    REQUEST_TIMEOUT_ENV,
    load_config_from_dict,
    load_config_from_yaml,
    request_timeout_from_env,
)


def test_defaults_from_empty_mapping():
    config = load_config_from_dict({}, environ={})

    assert config.link.link_type == "tcp"
    assert (config.link.host, config.link.port) == ("127.0.0.1", 5760)
    assert (config.link.local_host, config.link.local_port) == ("0.0.0.0", 14570)
    assert config.link.remote_host is None
    assert config.mavlink.source_system == 255
    assert config.mavlink.wire_version == 0
    assert config.log_fetch.request_timeout_seconds == pytest.approx(0.2)
    assert config.log_fetch.fetch_tick_seconds == pytest.approx(0.1)
    assert config.log_fetch.liveness_tick_seconds == pytest.approx(0.333)
    assert config.log_fetch.reverse is False


def test_yaml_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "link:\n"
        "  type: UDP\n"
        "  local_port: 14550\n"
        "  remote_host: 10.0.0.5\n"
        "  remote_port: 14555\n"
        "mavlink:\n"
        "  source_system: 200\n"
        "  wire_version: 1\n"
        "log_fetch:\n"
        "  log_path: flight_logs\n"
        "  reverse: true\n"
        "  request_timeout_ms: 350\n"
    )

    config = load_config_from_yaml(str(path), environ={})

    assert config.link.link_type == "udp"
    assert config.link.local_port == 14550
    assert (config.link.remote_host, config.link.remote_port) == ("10.0.0.5", 14555)
    assert config.mavlink.source_system == 200
    assert config.mavlink.wire_version == 1
    assert Path(config.log_fetch.log_path) == tmp_path.resolve() / "flight_logs"
    assert config.log_fetch.reverse is True
    assert config.log_fetch.request_timeout_seconds == pytest.approx(0.35)
    assert config.config_path == str(path.resolve())


def test_empty_yaml_file_gives_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert load_config_from_yaml(str(path), environ={}).link.link_type == "tcp"


def test_environment_overrides_request_timeout():
    config = load_config_from_dict(
        {"log_fetch": {"request_timeout_ms": 300}},
        environ={REQUEST_TIMEOUT_ENV: "1000"},
    )
    assert config.log_fetch.request_timeout_seconds == pytest.approx(1.0)


def test_request_timeout_from_env():
    assert request_timeout_from_env(0.2, environ={}) == 0.2
    assert request_timeout_from_env(0.2, environ={REQUEST_TIMEOUT_ENV: " "}) == 0.2
    assert request_timeout_from_env(0.2, environ={REQUEST_TIMEOUT_ENV: "50"}) == pytest.approx(0.05)
    with pytest.raises(ValueError):
        request_timeout_from_env(0.2, environ={REQUEST_TIMEOUT_ENV: "0"})
    with pytest.raises(ValueError):
        request_timeout_from_env(0.2, environ={REQUEST_TIMEOUT_ENV: "soon"})


@pytest.mark.parametrize("root", [
    {"link": {"type": "can"}},
    {"link": {"reconnect_base_delay": 0}},
    {"link": {"reconnect_base_delay": 5, "reconnect_max_delay": 1}},
    {"link": {"tx_queue_size": 0}},
    {"link": {"remote_host": "10.0.0.1"}},
    {"mavlink": {"source_system": 0}},
    {"mavlink": {"source_component": 256}},
    {"mavlink": {"wire_version": 3}},
    {"log_fetch": {"request_timeout_ms": 0}},
    {"log_fetch": {"fetch_tick_ms": -1}},
])
def test_invalid_values_rejected(root):
    with pytest.raises(ValueError):
        load_config_from_dict(root, environ={})


def test_top_level_must_be_mapping():
    with pytest.raises(ValueError):
        load_config_from_dict(["link"], environ={})
