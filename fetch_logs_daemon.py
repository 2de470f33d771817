#!/usr/bin/env python3
"""Headless MAVLink log download daemon.

Behavior:
- Connects to the vehicle link (tcp, udp or serial)
- Tracks every autopilot seen on the link
- Downloads all logs into log_path, resuming partial downloads
- Logs progress and completed downloads to stdout
- Runs until SIGINT/SIGTERM, then shuts down cleanly

Link RX threads only enqueue raw bytes. Decoding, peer updates and the
log fetcher all run on the main thread.
"""

from __future__ import annotations

import argparse
import logging
import queue
import signal
import sys
import time
from pathlib import Path
from typing import Optional

from config_loader import load_config_from_dict, load_config_from_yaml
from link_config import LINK_TYPES, FetchLogsConfig
from link_factory import build_link
from log_fetcher import LogFetcher, TransferProgress
from mavlink_codec import MavlinkCodec
from peer_registry import PeerRegistry
from vehicle_peer import Peer

LOG = logging.getLogger("fetch_logs_daemon")

_RX_QUEUE_SIZE = 10000


def _configure_stdout_logging(verbosity: int) -> None:
    level = logging.INFO
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity <= 0:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )


def _resolve_log_path(override: str) -> str:
    return str(Path(override).expanduser().resolve())


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="MAVLink log download daemon")
    ap.add_argument(
        "--config",
        default="config.yaml",
        help="Path to config.yaml (default: config.yaml; built-in defaults if missing)",
    )
    ap.add_argument(
        "--link",
        choices=list(LINK_TYPES),
        default="",
        help="Override link.type from config.yaml",
    )
    ap.add_argument(
        "--host",
        default="",
        help="Override link.host from config.yaml",
    )
    ap.add_argument(
        "--port",
        type=int,
        default=0,
        help="Override link.port from config.yaml",
    )
    ap.add_argument(
        "--log-path",
        default="",
        help="Override log_fetch.log_path (relative to the current directory)",
    )
    ap.add_argument(
        "--reverse",
        action="store_true",
        help="Download the newest logs first",
    )
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=1,
        help="Increase logging verbosity (use -vv for DEBUG)",
    )
    return ap.parse_args(argv)


def load_daemon_config(args: argparse.Namespace) -> FetchLogsConfig:
    config_path = Path(str(args.config)).expanduser()
    if config_path.exists():
        config = load_config_from_yaml(str(config_path))
    else:
        LOG.warning("Config file %s not found; using defaults", config_path)
        config = load_config_from_dict({}, base_dir=Path.cwd())

    link_override = str(args.link or "").strip()
    if link_override:
        config.link.link_type = link_override

    host = str(args.host or "").strip()
    if host:
        config.link.host = host
        if config.link.link_type == "udp":
            config.link.remote_host = host

    if int(args.port) > 0:
        config.link.port = int(args.port)
        if config.link.link_type == "udp":
            config.link.remote_port = int(args.port)

    if config.link.link_type == "udp" and (config.link.remote_host is None) != (config.link.remote_port is None):
        # only one half given on the command line; keep learning the remote
        config.link.remote_host = None
        config.link.remote_port = None

    log_override = str(args.log_path or "").strip()
    if log_override:
        config.log_fetch.log_path = _resolve_log_path(log_override)

    if args.reverse:
        config.log_fetch.reverse = True

    return config


def _log_progress(progress: TransferProgress) -> None:
    percent = 100
    if progress.log_total_bytes > 0:
        percent = round(progress.log_fetched_bytes / progress.log_total_bytes * 100)
    LOG.info(
        "log %d of %d: %d%% at %.1f kB/s, %d%% of total",
        progress.log_id,
        progress.log_total,
        percent,
        progress.download_rate,
        round(progress.total_fraction * 100),
    )


def _log_status_change(peer: Peer) -> None:
    hud = peer.telemetry.hud
    LOG.info(
        "system %d: %s, %s, %s, safety %s",
        peer.peer_id,
        "connected" if peer.connected else "disconnected",
        hud.flight_mode,
        hud.armed_state,
        hud.safety_state,
    )


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    _configure_stdout_logging(int(args.verbose))

    config = load_daemon_config(args)

    rx_q: queue.Queue[bytes] = queue.Queue(maxsize=_RX_QUEUE_SIZE)

    def _on_rx(data: bytes) -> None:
        try:
            rx_q.put_nowait(data)
        except queue.Full:
            LOG.warning("RX queue full; dropping %d bytes", len(data))

    codec = MavlinkCodec(
        source_system=config.mavlink.source_system,
        source_component=config.mavlink.source_component,
        wire_version=config.mavlink.wire_version,
    )

    def _on_new_peer(peer: Peer) -> None:
        peer.set_on_status_changed(_log_status_change)

    registry = PeerRegistry(codec, on_new_peer=_on_new_peer)
    link = build_link(config.link, _on_rx)
    registry.attach_link(link)

    fetch_cfg = config.log_fetch
    fetcher: LogFetcher = registry.get_universal_peer().get_log_fetcher(
        fetch_cfg.log_path,
        reverse=fetch_cfg.reverse,
        request_timeout=fetch_cfg.request_timeout_seconds,
        target_system=fetch_cfg.target_system,
        target_component=fetch_cfg.target_component,
    )
    fetcher.set_on_progress(_log_progress)
    fetcher.set_on_downloaded(lambda log_id: LOG.info("log %d downloaded", log_id))

    stop = False

    def _handle_signal(_signum: int, _frame) -> None:  # type: ignore[no-untyped-def]
        nonlocal stop
        stop = True

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    LOG.info("Fetching logs into %s", fetch_cfg.log_path)

    link.start()
    fetcher.start()

    next_fetch_tick = time.monotonic()
    next_liveness_tick = next_fetch_tick

    # Main loop: drain link bytes, run both ticks.
    try:
        while not stop:
            now = time.monotonic()
            wait = max(0.0, min(next_fetch_tick, next_liveness_tick) - now)
            try:
                data = rx_q.get(timeout=wait)
            except queue.Empty:
                data = b""

            if data:
                registry.feed(data)

            now = time.monotonic()
            if now >= next_fetch_tick:
                registry.check_log_fetchers(now)
                next_fetch_tick = now + fetch_cfg.fetch_tick_seconds
            if now >= next_liveness_tick:
                registry.check_liveness(now)
                next_liveness_tick = now + fetch_cfg.liveness_tick_seconds

    finally:
        fetcher.stop()
        link.stop()

    LOG.info("Stopped; %d%% of known logs downloaded", round(fetcher.get_total_fraction() * 100))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
