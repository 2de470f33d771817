# config_loader.py
#
# YAML → in-memory config structs for the link + log fetch stack.
#
# The request timeout can additionally be overridden from the
# environment (LOG_FETCH_REQ_TIMEOUT_MILLIS), which wins over the file.

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml  # pip install pyyaml

from link_config import (
    LINK_TYPES,
    FetchLogsConfig,
    LinkConfig,
    LogFetchConfig,
    MavlinkConfig,
)

REQUEST_TIMEOUT_ENV = "LOG_FETCH_REQ_TIMEOUT_MILLIS"


def _section(root: Dict[str, Any], key: str) -> Dict[str, Any]:
    section_any = root.get(key, {})
    if not isinstance(section_any, dict):
        return {}
    return section_any


# ---------------------------------------------------------------------------
# Link config
# ---------------------------------------------------------------------------

def load_link_config(root: Dict[str, Any]) -> LinkConfig:
    """Load link configuration from the top-level `link` section.

    Example YAML:

        link:
          type: tcp
          host: "127.0.0.1"
          port: 5760
          reconnect_base_delay: 1.0
          reconnect_max_delay: 30.0
          tx_queue_size: 1000
    """

    link_cfg = _section(root, "link")

    link_type = str(link_cfg.get("type", "tcp")).strip().lower()
    if link_type not in LINK_TYPES:
        raise ValueError(f"link.type must be one of: {', '.join(LINK_TYPES)}")

    reconnect_base_delay = float(link_cfg.get("reconnect_base_delay", 1.0))
    reconnect_max_delay = float(link_cfg.get("reconnect_max_delay", 30.0))
    tx_queue_size = int(link_cfg.get("tx_queue_size", 1000))

    if reconnect_base_delay <= 0.0:
        raise ValueError("link.reconnect_base_delay must be > 0")
    if reconnect_max_delay < reconnect_base_delay:
        raise ValueError("link.reconnect_max_delay must be >= link.reconnect_base_delay")
    if tx_queue_size < 1:
        raise ValueError("link.tx_queue_size must be >= 1")

    remote_host = link_cfg.get("remote_host")
    remote_port = link_cfg.get("remote_port")
    if (remote_host is None) != (remote_port is None):
        raise ValueError("link.remote_host and link.remote_port must be set together")
    if remote_host is not None:
        remote_host = str(remote_host)
        remote_port = int(remote_port)

    return LinkConfig(
        link_type=link_type,
        host=str(link_cfg.get("host", "127.0.0.1")),
        port=int(link_cfg.get("port", 5760)),
        local_host=str(link_cfg.get("local_host", "0.0.0.0")),
        local_port=int(link_cfg.get("local_port", 14570)),
        remote_host=remote_host,
        remote_port=remote_port,
        device=str(link_cfg.get("device", "/dev/ttyUSB0")),
        baudrate=int(link_cfg.get("baudrate", 57600)),
        reconnect_base_delay=reconnect_base_delay,
        reconnect_max_delay=reconnect_max_delay,
        tx_queue_size=tx_queue_size,
    )


# ---------------------------------------------------------------------------
# MAVLink identity
# ---------------------------------------------------------------------------

def load_mavlink_config(root: Dict[str, Any]) -> MavlinkConfig:
    mav_cfg = _section(root, "mavlink")

    source_system = int(mav_cfg.get("source_system", 255))
    source_component = int(mav_cfg.get("source_component", 0))
    wire_version = int(mav_cfg.get("wire_version", 0))

    if not 1 <= source_system <= 255:
        raise ValueError("mavlink.source_system must be within 1..255")
    if not 0 <= source_component <= 255:
        raise ValueError("mavlink.source_component must be within 0..255")
    if wire_version not in (0, 1, 2):
        raise ValueError("mavlink.wire_version must be one of: 0, 1, 2")

    return MavlinkConfig(
        source_system=source_system,
        source_component=source_component,
        wire_version=wire_version,
    )


# ---------------------------------------------------------------------------
# Log fetch
# ---------------------------------------------------------------------------

def request_timeout_from_env(
        default_seconds: float,
        environ: Optional[Mapping[str, str]] = None,
) -> float:
    """Return the per-request timeout, honoring LOG_FETCH_REQ_TIMEOUT_MILLIS."""

    env = os.environ if environ is None else environ
    raw = env.get(REQUEST_TIMEOUT_ENV)
    if raw is None or not str(raw).strip():
        return default_seconds

    millis = float(raw)
    if millis <= 0.0:
        raise ValueError(f"{REQUEST_TIMEOUT_ENV} must be > 0")
    return millis / 1000.0


def load_log_fetch_config(
        root: Dict[str, Any],
        base_dir: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
) -> LogFetchConfig:
    fetch_cfg = _section(root, "log_fetch")

    raw_log_path = str(fetch_cfg.get("log_path", "logs"))
    log_path = Path(raw_log_path).expanduser()
    if base_dir is not None and not log_path.is_absolute():
        log_path = base_dir.joinpath(log_path)

    request_timeout_ms = float(fetch_cfg.get("request_timeout_ms", 200))
    fetch_tick_ms = float(fetch_cfg.get("fetch_tick_ms", 100))
    liveness_tick_ms = float(fetch_cfg.get("liveness_tick_ms", 333))

    if request_timeout_ms <= 0.0:
        raise ValueError("log_fetch.request_timeout_ms must be > 0")
    if fetch_tick_ms <= 0.0:
        raise ValueError("log_fetch.fetch_tick_ms must be > 0")
    if liveness_tick_ms <= 0.0:
        raise ValueError("log_fetch.liveness_tick_ms must be > 0")

    return LogFetchConfig(
        log_path=str(log_path),
        reverse=bool(fetch_cfg.get("reverse", False)),
        request_timeout_seconds=request_timeout_from_env(request_timeout_ms / 1000.0, environ),
        fetch_tick_seconds=fetch_tick_ms / 1000.0,
        liveness_tick_seconds=liveness_tick_ms / 1000.0,
        target_system=int(fetch_cfg.get("target_system", 0)),
        target_component=int(fetch_cfg.get("target_component", 0)),
    )


# ---------------------------------------------------------------------------
# Whole file
# ---------------------------------------------------------------------------

def load_config_from_dict(
        root: Dict[str, Any],
        base_dir: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
) -> FetchLogsConfig:
    if not isinstance(root, dict):
        raise ValueError("Top-level YAML must be a mapping")

    return FetchLogsConfig(
        link=load_link_config(root),
        mavlink=load_mavlink_config(root),
        log_fetch=load_log_fetch_config(root, base_dir=base_dir, environ=environ),
    )


def load_config_from_yaml(
        path: str,
        environ: Optional[Mapping[str, str]] = None,
) -> FetchLogsConfig:
    """Load the complete FetchLogsConfig from a YAML file.

    A relative `log_fetch.log_path` is resolved against the directory of
    the config file.
    """

    with open(path, "r", encoding="utf-8") as f:
        root = yaml.safe_load(f)

    if root is None:
        root = {}

    config_path = Path(path).resolve()
    config = load_config_from_dict(root, base_dir=config_path.parent, environ=environ)
    config.config_path = str(config_path)
    return config
