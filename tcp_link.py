"""
tcp_link.py

MAVLink byte link over a TCP stream (e.g. SITL on port 5760, or a
telemetry radio bridge).

Goals:
- Act as a LinkClient compatible with PeerRegistry (start/stop/send).
- Client mode only: connect to host:port, reconnect with bounded
  exponential backoff when the connection drops.
- Raw bytes both ways. MAVLink frames carry their own framing, so the
  stream is handed to `rx_callback` chunk by chunk as it arrives.
- TX is queued and never blocks the caller; a full queue drops.
"""

from __future__ import annotations

import logging
import queue
import socket
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from link_config import LinkConfig

LOG = logging.getLogger(__name__)

_RECV_SIZE = 4096


class TcpLinkError(Exception):
    pass


@dataclass
class LinkMetrics:
    name: str
    link_type: str
    running: bool
    connected: bool

    started_ts: float = 0.0
    last_connect_ts: float = 0.0
    last_disconnect_ts: float = 0.0
    last_rx_ts: float = 0.0
    last_tx_ts: float = 0.0

    rx_chunks: int = 0
    tx_chunks: int = 0
    rx_bytes: int = 0
    tx_bytes: int = 0

    connect_attempts: int = 0
    connect_successes: int = 0
    disconnects: int = 0
    tx_dropped_queue_full: int = 0
    tx_dropped_no_conn: int = 0
    tx_errors: int = 0
    rx_errors: int = 0
    last_error: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class TcpLink:
    """TCP client link.

    Public API:
        start() -> None
        stop(timeout: float = 5.0) -> None
        send(payload: bytes) -> None
        is_connected() -> bool
        get_metrics() -> dict
    """

    def __init__(
            self,
            config: LinkConfig,
            rx_callback: Callable[[bytes], None],
            name: str = "tcp-link",
    ) -> None:
        self._config = config
        self._rx_callback = rx_callback
        self._name = name

        self._sock: Optional[socket.socket] = None
        self._running = threading.Event()
        self._connected = threading.Event()

        self._rx_thread: Optional[threading.Thread] = None
        self._tx_thread: Optional[threading.Thread] = None

        self._tx_queue: queue.Queue[bytes] = queue.Queue(maxsize=int(config.tx_queue_size))
        self._lock = threading.Lock()

        self._metrics = LinkMetrics(
            name=str(self._name),
            link_type="tcp",
            running=False,
            connected=False,
        )

    # ------------------------------------------------------------------
    # LinkClient interface
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running.is_set():
            LOG.warning("%s already running", self._name)
            return

        self._running.set()
        self._metrics.running = True
        self._metrics.started_ts = time.time()

        LOG.info("%s starting, remote %s:%d", self._name, self._config.host, self._config.port)

        self._rx_thread = threading.Thread(
            target=self._rx_loop,
            name=f"{self._name}-rx",
            daemon=True,
        )
        self._tx_thread = threading.Thread(
            target=self._tx_loop,
            name=f"{self._name}-tx",
            daemon=True,
        )
        self._rx_thread.start()
        self._tx_thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        if not self._running.is_set():
            return

        self._running.clear()
        self._metrics.running = False

        # wake the TX thread
        try:
            self._tx_queue.put_nowait(b"")
        except queue.Full:
            LOG.warning("TX queue full while stopping; forcing shutdown")

        if self._rx_thread is not None:
            self._rx_thread.join(timeout=timeout)
        if self._tx_thread is not None:
            self._tx_thread.join(timeout=timeout)

        self._drop_connection(reason="")

    def send(self, payload: bytes) -> None:
        if not self._running.is_set():
            return
        if not isinstance(payload, (bytes, bytearray)):
            raise TypeError("payload must be bytes-like")
        if payload == b"":
            return
        try:
            self._tx_queue.put_nowait(bytes(payload))
        except queue.Full:
            # drop rather than block the protocol thread
            self._metrics.tx_dropped_queue_full += 1

    def is_connected(self) -> bool:
        return self._connected.is_set()

    def get_metrics(self) -> dict:
        with self._lock:
            self._metrics.connected = self._connected.is_set()
            self._metrics.running = self._running.is_set()
            return dict(self._metrics.to_dict())

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _connect_with_backoff(self) -> None:
        delay = self._config.reconnect_base_delay
        if delay <= 0.0:
            delay = 0.2

        while self._running.is_set() and not self._connected.is_set():
            try:
                self._metrics.connect_attempts += 1
                LOG.info("%s connecting to %s:%d", self._name, self._config.host, self._config.port)
                sock = socket.create_connection((self._config.host, self._config.port), timeout=10.0)
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
                sock.settimeout(1.0)

                with self._lock:
                    if self._sock is not None:
                        try:
                            self._sock.close()
                        except OSError:
                            LOG.warning("Error closing previous TCP socket", exc_info=True)
                    self._sock = sock
                    self._connected.set()
                    self._metrics.connected = True
                    self._metrics.last_connect_ts = time.time()
                    self._metrics.connect_successes += 1
                    self._metrics.last_error = ""

                LOG.info("%s connected to %s:%d", self._name, self._config.host, self._config.port)
                return
            except OSError as exc:
                self._metrics.last_error = "connect_failed"
                LOG.warning("%s connect failed (%s); retrying in %.1fs", self._name, exc, delay)
                self._sleep(delay)
                delay = min(delay * 2.0, self._config.reconnect_max_delay)

    def _drop_connection(self, reason: str = "connection dropped") -> None:
        if reason:
            LOG.warning("%s %s", self._name, reason)
        with self._lock:
            if self._sock is None:
                self._connected.clear()
                return
            try:
                self._sock.close()
            except OSError:
                LOG.warning("Error closing TCP socket", exc_info=True)
            self._sock = None
            self._connected.clear()
            self._metrics.connected = False
            self._metrics.last_disconnect_ts = time.time()
            self._metrics.disconnects += 1

    def _sleep(self, seconds: float) -> None:
        # wake early on stop()
        end = time.monotonic() + seconds
        while self._running.is_set() and time.monotonic() < end:
            time.sleep(min(0.2, end - time.monotonic()))

    # ------------------------------------------------------------------
    # RX / TX loops
    # ------------------------------------------------------------------

    def _rx_loop(self) -> None:
        while self._running.is_set():
            if not self._connected.is_set():
                self._connect_with_backoff()
                continue

            with self._lock:
                sock = self._sock
            if sock is None:
                self._connected.clear()
                continue

            try:
                data = sock.recv(_RECV_SIZE)
            except socket.timeout:
                continue
            except OSError as exc:
                self._metrics.rx_errors += 1
                self._metrics.last_error = "rx_error"
                self._drop_connection(reason=f"RX failed ({exc}); reconnecting")
                continue

            if not data:
                self._drop_connection(reason="connection closed by peer; reconnecting")
                continue

            self._metrics.rx_chunks += 1
            self._metrics.rx_bytes += len(data)
            self._metrics.last_rx_ts = time.time()

            try:
                self._rx_callback(data)
            except (ValueError, RuntimeError):
                self._metrics.rx_errors += 1
                self._metrics.last_error = "rx_callback_error"
                LOG.warning("Error in %s RX callback; chunk dropped", self._name, exc_info=True)

    def _tx_loop(self) -> None:
        while self._running.is_set():
            try:
                payload = self._tx_queue.get(timeout=0.25)
            except queue.Empty:
                continue

            if payload == b"":
                continue

            if not self._connected.is_set():
                self._metrics.tx_dropped_no_conn += 1
                continue

            try:
                with self._lock:
                    sock = self._sock
                if sock is None:
                    raise TcpLinkError("TCP socket missing in TX loop")
                sock.sendall(payload)
            except (OSError, TcpLinkError) as exc:
                self._metrics.tx_errors += 1
                self._metrics.last_error = "tx_error"
                self._drop_connection(reason=f"TX failed ({exc}); reconnecting")
                continue

            self._metrics.tx_chunks += 1
            self._metrics.tx_bytes += len(payload)
            self._metrics.last_tx_ts = time.time()
