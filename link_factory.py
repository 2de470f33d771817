"""
link_factory.py

Builds the configured LinkClient (tcp, udp or serial). The registry
only relies on start/stop/send, so callers never need the concrete type.
"""

from __future__ import annotations

from typing import Callable

from link_config import LinkConfig
from peer_registry import LinkClient
from serial_link import SerialLink
from tcp_link import TcpLink
from udp_link import UdpLink


def build_link(config: LinkConfig, rx_callback: Callable[[bytes], None]) -> LinkClient:
    link_type = str(config.link_type).strip().lower()

    if link_type == "tcp":
        return TcpLink(config, rx_callback, name="mavlink-tcp-link")
    if link_type == "udp":
        return UdpLink(config, rx_callback, name="mavlink-udp-link")
    if link_type == "serial":
        return SerialLink(config, rx_callback, name="mavlink-serial-link")

    raise ValueError(f"unknown link type {config.link_type!r}")
