"""
serial_link.py

MAVLink byte link over a serial port (USB or telemetry radio), using
pyserial. Same public API as TcpLink; the port is reopened with bounded
exponential backoff after I/O errors (e.g. a USB cable pulled out).
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable, Optional

import serial  # pip install pyserial

from link_config import LinkConfig
from tcp_link import LinkMetrics

LOG = logging.getLogger(__name__)

_READ_SIZE = 1024


class SerialLinkError(Exception):
    pass


class SerialLink:
    def __init__(
            self,
            config: LinkConfig,
            rx_callback: Callable[[bytes], None],
            name: str = "serial-link",
    ) -> None:
        if int(config.baudrate) <= 0:
            raise SerialLinkError(f"invalid baudrate {config.baudrate}")

        self._config = config
        self._rx_callback = rx_callback
        self._name = name

        self._port: Optional[serial.Serial] = None
        self._running = threading.Event()
        self._connected = threading.Event()

        self._rx_thread: Optional[threading.Thread] = None
        self._tx_thread: Optional[threading.Thread] = None

        self._tx_queue: queue.Queue[bytes] = queue.Queue(maxsize=int(config.tx_queue_size))
        self._lock = threading.Lock()

        self._metrics = LinkMetrics(
            name=str(self._name),
            link_type="serial",
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

        LOG.info("%s starting on %s @ %d", self._name, self._config.device, self._config.baudrate)

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

        self._close_port(reason="")

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
        return self._connected.is_set()

    def get_metrics(self) -> dict:
        with self._lock:
            self._metrics.connected = self._connected.is_set()
            self._metrics.running = self._running.is_set()
            return dict(self._metrics.to_dict())

    # ------------------------------------------------------------------
    # Port management
    # ------------------------------------------------------------------

    def _open_with_backoff(self) -> None:
        delay = self._config.reconnect_base_delay
        if delay <= 0.0:
            delay = 0.2

        while self._running.is_set() and not self._connected.is_set():
            try:
                self._metrics.connect_attempts += 1
                port = serial.Serial(
                    self._config.device,
                    self._config.baudrate,
                    timeout=0.1,
                    write_timeout=1.0,
                )
            except (serial.SerialException, OSError) as exc:
                self._metrics.last_error = "open_failed"
                LOG.warning("%s cannot open %s (%s); retrying in %.1fs",
                            self._name, self._config.device, exc, delay)
                self._sleep(delay)
                delay = min(delay * 2.0, self._config.reconnect_max_delay)
                continue

            with self._lock:
                self._port = port
                self._connected.set()
                self._metrics.connected = True
                self._metrics.last_connect_ts = time.time()
                self._metrics.connect_successes += 1
                self._metrics.last_error = ""
            LOG.info("%s opened %s", self._name, self._config.device)

    def _close_port(self, reason: str = "port lost") -> None:
        if reason:
            LOG.warning("%s %s", self._name, reason)
        with self._lock:
            port = self._port
            self._port = None
            was_connected = self._connected.is_set()
            self._connected.clear()
            if was_connected:
                self._metrics.connected = False
                self._metrics.last_disconnect_ts = time.time()
                self._metrics.disconnects += 1
        if port is not None:
            try:
                port.close()
            except (serial.SerialException, OSError):
                LOG.warning("Error closing serial port", exc_info=True)

    def _sleep(self, seconds: float) -> None:
        end = time.monotonic() + seconds
        while self._running.is_set() and time.monotonic() < end:
            time.sleep(min(0.2, end - time.monotonic()))

    # ------------------------------------------------------------------
    # RX / TX loops
    # ------------------------------------------------------------------

    def _rx_loop(self) -> None:
        while self._running.is_set():
            if not self._connected.is_set():
                self._open_with_backoff()
                continue

            with self._lock:
                port = self._port
            if port is None:
                self._connected.clear()
                continue

            try:
                data = port.read(_READ_SIZE)
            except (serial.SerialException, OSError) as exc:
                self._metrics.rx_errors += 1
                self._metrics.last_error = "rx_error"
                self._close_port(reason=f"read failed ({exc}); reopening")
                continue

            if not data:
                continue

            self._metrics.rx_chunks += 1
            self._metrics.rx_bytes += len(data)
            self._metrics.last_rx_ts = time.time()

            try:
                self._rx_callback(bytes(data))
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
                    port = self._port
                if port is None:
                    raise SerialLinkError("serial port missing in TX loop")
                port.write(payload)
            except (serial.SerialException, OSError, SerialLinkError) as exc:
                self._metrics.tx_errors += 1
                self._metrics.last_error = "tx_error"
                self._close_port(reason=f"write failed ({exc}); reopening")
                continue

            self._metrics.tx_chunks += 1
            self._metrics.tx_bytes += len(payload)
            self._metrics.last_tx_ts = time.time()
