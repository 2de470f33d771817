"""
Configuration structs for the telemetry link + log fetch stack.

The link layer is one of TCP, UDP or serial. Everything that talks
MAVLink above it (codec, peer registry, log fetcher) is configured
through the remaining sections.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

LINK_TYPES = ("tcp", "udp", "serial")


@dataclass
class LinkConfig:
    """Configuration for the raw byte link to the vehicle(s).

    - link_type: one of "tcp", "udp", "serial"
    - host/port: TCP remote endpoint
    - local_host/local_port: UDP bind address
    - remote_host/remote_port: UDP peer; learnt from the first datagram
      when unset
    - device/baudrate: serial port
    - reconnect_base_delay: initial reconnect backoff, in seconds
    - reconnect_max_delay: maximum reconnect backoff, in seconds
    - tx_queue_size: maximum number of queued buffers waiting to be sent
    """

    link_type: str = "tcp"

    host: str = "127.0.0.1"
    port: int = 5760

    local_host: str = "0.0.0.0"
    local_port: int = 14570
    remote_host: Optional[str] = None
    remote_port: Optional[int] = None

    device: str = "/dev/ttyUSB0"
    baudrate: int = 57600

    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0

    tx_queue_size: int = 1000


@dataclass
class MavlinkConfig:
    """Our own identity on the link and the wire version we emit."""

    source_system: int = 255
    source_component: int = 0
    wire_version: int = 0  # 0 = auto-sense, 1 = v1, 2 = v2


@dataclass
class LogFetchConfig:
    """Log download behavior."""

    log_path: str = "logs"
    reverse: bool = False
    request_timeout_seconds: float = 0.2
    fetch_tick_seconds: float = 0.1
    liveness_tick_seconds: float = 0.333
    target_system: int = 0
    target_component: int = 0


@dataclass
class FetchLogsConfig:
    """Overall process configuration."""

    link: LinkConfig = field(default_factory=LinkConfig)
    mavlink: MavlinkConfig = field(default_factory=MavlinkConfig)
    log_fetch: LogFetchConfig = field(default_factory=LogFetchConfig)
    config_path: Optional[str] = None
