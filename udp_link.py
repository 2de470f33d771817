"""
udp_link.py

MAVLink byte link over UDP, the usual way autopilots and SITL talk to
ground stations (e.g. PX4 SITL sends to 14550/14570).

- Binds local_host:local_port.
- Sends to remote_host:remote_port if configured; otherwise the remote
  is learnt from the first datagram received and follows the last
  sender afterwards.
- Each datagram is handed to `rx_callback` as-is.
"""

from __future__ import annotations

import logging
import queue
import socket
import threading
import time
from typing import Callable, Optional, Tuple

from link_config import LinkConfig
from tcp_link import LinkMetrics

LOG = logging.getLogger(__name__)

_MAX_DATAGRAM = 65535

Address = Tuple[str, int]


class UdpLink:
    """UDP link. Same public API as TcpLink."""

    def __init__(
            self,
            config: LinkConfig,
            rx_callback: Callable[[bytes], None],
            name: str = "udp-link",
    ) -> None:
        self._config = config
        self._rx_callback = rx_callback
        self._name = name

        self._sock: Optional[socket.socket] = None
        self._running = threading.Event()

        self._remote: Optional[Address] = None
        if config.remote_host is not None and config.remote_port is not None:
            self._remote = (str(config.remote_host), int(config.remote_port))
        self._fixed_remote = self._remote is not None

        self._rx_thread: Optional[threading.Thread] = None
        self._tx_thread: Optional[threading.Thread] = None

        self._tx_queue: queue.Queue[bytes] = queue.Queue(maxsize=int(config.tx_queue_size))
        self._lock = threading.Lock()

        self._metrics = LinkMetrics(
            name=str(self._name),
            link_type="udp",
            running=False,
            connected=False,
        )

    @property
    def remote(self) -> Optional[Address]:
        with self._lock:
            return self._remote

    # ------------------------------------------------------------------
    # LinkClient interface
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running.is_set():
            LOG.warning("%s already running", self._name)
            return

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self._config.local_host, self._config.local_port))
        sock.settimeout(0.5)

        with self._lock:
            self._sock = sock

        self._running.set()
        self._metrics.running = True
        self._metrics.started_ts = time.time()

        LOG.info("%s listening on %s:%d", self._name, self._config.local_host, self._config.local_port)

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

        try:
            self._tx_queue.put_nowait(b"")
        except queue.Full:
            LOG.warning("TX queue full while stopping; forcing shutdown")

        if self._rx_thread is not None:
            self._rx_thread.join(timeout=timeout)
        if self._tx_thread is not None:
            self._tx_thread.join(timeout=timeout)

        with self._lock:
            if self._sock is not None:
                try:
                    self._sock.close()
                except OSError:
                    LOG.warning("Error closing UDP socket", exc_info=True)
                self._sock = None

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
            self._metrics.tx_dropped_queue_full += 1

    def is_connected(self) -> bool:
        return self.remote is not None

    def get_metrics(self) -> dict:
        with self._lock:
            self._metrics.connected = self._remote is not None
            self._metrics.running = self._running.is_set()
            return dict(self._metrics.to_dict())

    # ------------------------------------------------------------------
    # RX / TX loops
    # ------------------------------------------------------------------

    def _rx_loop(self) -> None:
        while self._running.is_set():
            with self._lock:
                sock = self._sock
            if sock is None:
                return

            try:
                data, addr = sock.recvfrom(_MAX_DATAGRAM)
            except socket.timeout:
                continue
            except OSError as exc:
                if not self._running.is_set():
                    return
                self._metrics.rx_errors += 1
                self._metrics.last_error = "rx_error"
                LOG.warning("%s receive failed: %s", self._name, exc)
                time.sleep(0.2)
                continue

            if not self._fixed_remote:
                self._learn_remote((str(addr[0]), int(addr[1])))

            self._metrics.rx_chunks += 1
            self._metrics.rx_bytes += len(data)
            self._metrics.last_rx_ts = time.time()

            try:
                self._rx_callback(data)
            except (ValueError, RuntimeError):
                self._metrics.rx_errors += 1
                self._metrics.last_error = "rx_callback_error"
                LOG.warning("Error in %s RX callback; datagram dropped", self._name, exc_info=True)

    def _learn_remote(self, addr: Address) -> None:
        with self._lock:
            if self._remote == addr:
                return
            self._remote = addr
            if self._metrics.connect_successes == 0:
                self._metrics.last_connect_ts = time.time()
            self._metrics.connect_successes += 1
        LOG.info("%s new remote %s:%d", self._name, addr[0], addr[1])

    def _tx_loop(self) -> None:
        while self._running.is_set():
            try:
                payload = self._tx_queue.get(timeout=0.25)
            except queue.Empty:
                continue

            if payload == b"":
                continue

            with self._lock:
                sock = self._sock
                remote = self._remote

            if sock is None or remote is None:
                self._metrics.tx_dropped_no_conn += 1
                continue

            try:
                sock.sendto(payload, remote)
            except OSError as exc:
                self._metrics.tx_errors += 1
                self._metrics.last_error = "tx_error"
                LOG.warning("%s send to %s:%d failed: %s", self._name, remote[0], remote[1], exc)
                continue

            self._metrics.tx_chunks += 1
            self._metrics.tx_bytes += len(payload)
            self._metrics.last_tx_ts = time.time()
