"""
Resumable MAVLink log download.

- Lists the remote log catalog (LOG_REQUEST_LIST / LOG_ENTRY).
- Reconciles it with the persisted catalog (see log_catalog.LogCatalog).
- Fetches logs block by block (LOG_REQUEST_DATA / LOG_DATA), tracking
  gaps inside the current block as a stack of missing byte ranges.
- Writes each complete block, then persists progress, so a restart
  resumes at the last durable block boundary.
- Everything time based (retries, stall detection, rate, progress) is
  driven from `check_for_timeout()`, called periodically by the host.
- No threads, no blocking calls, no exceptions out of `on_message()`.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from enum import IntEnum
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

from config_loader import request_timeout_from_env
from log_catalog import LogCatalog, LogEntry
from log_sink import LogFileSink, LogSink, SinkFactory
from mavlink_codec import LIST_ALL, LOG_DATA_PAYLOAD

LOG = logging.getLogger(__name__)

# ----------------------------------------------------------------------
# Constants
# ----------------------------------------------------------------------

# one block is a whole number of LOG_DATA payloads
BLOCK_SIZE = 455 * LOG_DATA_PAYLOAD

DEFAULT_REQUEST_TIMEOUT = 0.2
STALL_TIMEOUT = 5.0
LIST_RETRY_TIMEOUT = 10.0
RATE_WINDOW = 0.2
RATE_SMOOTHING = 0.9
PROGRESS_INTERVAL = 2.0


class LogFetcherStatus(IntEnum):
    PAUSED = 0
    RUNNING = 1
    ERROR = 2
    NO_LOGS = 3


class FetchPhase(IntEnum):
    STANDBY = 0
    LISTING = 1
    FETCHING = 2
    WRITING = 3


@dataclass(frozen=True)
class TransferProgress:
    log_id: int
    log_total: int
    download_rate: float  # kB/s
    log_fetched_bytes: int
    log_total_bytes: int
    total_fraction: float


ByteRange = Tuple[int, int]


# ----------------------------------------------------------------------
# Log Fetcher
# ----------------------------------------------------------------------

class LogFetcher:
    """
    Per-vehicle log download state machine.

    Status (PAUSED/RUNNING/ERROR/NO_LOGS) gates the periodic tick; only
    RUNNING does anything. Phase (STANDBY/LISTING/FETCHING/WRITING)
    drives the protocol.
    """

    def __init__(
            self,
            codec: Any,
            send_message: Callable[[Any], None],
            log_path: str,
            reverse: bool = False,
            request_timeout: Optional[float] = None,
            target_system: int = 0,
            target_component: int = 0,
            block_size: int = BLOCK_SIZE,
            clock: Callable[[], float] = time.monotonic,
            sink_factory: SinkFactory = LogFileSink,
    ) -> None:
        if block_size <= 0 or block_size % LOG_DATA_PAYLOAD != 0:
            raise ValueError(f"block_size must be a positive multiple of {LOG_DATA_PAYLOAD}")

        self._codec = codec
        self._send_message = send_message
        self._reverse = bool(reverse)
        self._target_system = int(target_system)
        self._target_component = int(target_component)
        self._block_size = int(block_size)
        self._clock = clock
        self._sink_factory = sink_factory

        if request_timeout is None:
            request_timeout = request_timeout_from_env(DEFAULT_REQUEST_TIMEOUT)
        self._request_timeout = float(request_timeout)

        self._catalog = LogCatalog(log_path)

        # listing accumulator: log id -> (id, utc, size)
        self._list: Dict[int, Tuple[int, int, int]] = {}
        self._list_updated = False
        self._total_list_items = -1
        self._first_list_id = 0

        # current log + block
        self._current_id = -1
        self._block_offset = 0
        self._block_missing: List[ByteRange] = []
        self._block_buffer = bytearray(self._block_size)
        self._sink: Optional[LogSink] = None
        self._writing_blocked = False

        # current request
        self._current_request_offset = 0
        self._current_request_size = 0
        self._next_data_offset = 0
        self._received_data_offset = 0

        # rate / progress
        self._data_received = 0
        self._average_rate = 0.0
        self._average_rate_time = 0.0
        self._prev_progress_time = 0.0

        self._last_action_ts = 0.0
        self._last_received_ts = 0.0

        self._status = LogFetcherStatus.PAUSED
        self._phase = FetchPhase.STANDBY

        self._on_downloaded: Optional[Callable[[int], None]] = None
        self._on_progress: Optional[Callable[[TransferProgress], None]] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set_on_downloaded(self, cb: Optional[Callable[[int], None]]) -> None:
        """cb(log_id) once a log is completely on disk under its final name."""
        self._on_downloaded = cb

    def set_on_progress(self, cb: Optional[Callable[[TransferProgress], None]]) -> None:
        self._on_progress = cb

    def start(self) -> None:
        self._status = LogFetcherStatus.RUNNING
        self._start_listing()

    def stop(self) -> None:
        self._status = LogFetcherStatus.PAUSED
        self._phase = FetchPhase.STANDBY
        self._release_sink()

    def get_status(self) -> LogFetcherStatus:
        return self._status

    def get_phase(self) -> FetchPhase:
        return self._phase

    def is_transferring(self) -> bool:
        return self._status == LogFetcherStatus.RUNNING

    def get_total_fraction(self) -> float:
        return self._catalog.total_fraction()

    def get_download_rate(self) -> float:
        return self._average_rate

    @property
    def catalog(self) -> LogCatalog:
        return self._catalog

    @property
    def current_log_id(self) -> int:
        return self._current_id

    @property
    def request_timeout(self) -> float:
        return self._request_timeout

    @property
    def block_offset(self) -> int:
        return self._block_offset

    def missing_ranges(self) -> List[ByteRange]:
        return list(self._block_missing)

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    def on_message(self, msg: Any) -> None:
        msg_type = msg.get_type()

        if msg_type == "LOG_ENTRY" and self._phase == FetchPhase.LISTING:
            self._handle_log_entry(msg)
        elif msg_type == "LOG_DATA" and self._phase == FetchPhase.FETCHING:
            self._handle_log_data(msg)

    def _handle_log_entry(self, msg: Any) -> None:
        self._last_received_ts = self._clock()

        num_logs = int(msg.num_logs)
        if num_logs == 0:
            # either no logs or the vehicle cannot open its log directory
            self.stop()
            self._status = LogFetcherStatus.NO_LOGS
            LOG.warning("received 0 log count")
            return

        if self._total_list_items < 0:
            self._total_list_items = num_logs
            # PX4 numbers logs from 0, ArduPilot from 1
            self._first_list_id = max(int(msg.last_log_num) - num_logs + 1, 0)

        log_id = int(msg.id)
        if log_id not in self._list:
            self._list[log_id] = (log_id, int(msg.time_utc), int(msg.size))
            LOG.debug("LOG_ENTRY: %d", len(self._list))

        if len(self._list) >= self._total_list_items:
            LOG.debug("received all log entries")

            remote = [self._list[k] for k in sorted(self._list)]
            self._catalog.reconcile(remote)
            self._catalog.save()

            # fetching starts on the next tick
            self._phase = FetchPhase.STANDBY
            self._list_updated = True

    def _handle_log_data(self, msg: Any) -> None:
        self._last_received_ts = self._clock()

        log_id = int(msg.id)
        if log_id != self._current_id:
            # late data for a previous log
            LOG.debug("wrong log id %d", log_id)
            return

        ofs = int(msg.ofs)
        count = int(msg.count)
        block_end = self._block_offset + self._block_size

        if ofs < self._block_offset or ofs > block_end:
            # races between finishing a block and retries
            LOG.debug("outside space %d %d %d", ofs, self._block_offset, block_end)
            return

        filled = (ofs, ofs + count)
        if ofs > self._next_data_offset:
            self._block_missing.append((self._next_data_offset, ofs))
            self._next_data_offset = ofs + count
        elif filled in self._block_missing:
            self._block_missing.remove(filled)
            if ofs == self._next_data_offset:
                self._received_data_offset = ofs
            # a late fill never moves the stream position back
            self._next_data_offset = max(self._next_data_offset, ofs + count)
        else:
            # recovery point after a timeout
            self._received_data_offset = ofs
            self._next_data_offset = ofs + count

        start = ofs - self._block_offset
        end = min(start + count, self._block_size)
        payload = bytes(msg.data[: end - start])
        self._block_buffer[start:start + len(payload)] = payload
        self._data_received += count

        if ofs + count >= self._current_request_offset + self._current_request_size:
            self._on_request_complete()

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def _start_listing(self) -> None:
        self._release_sink()

        # set the action ts before the phase changes
        self._last_action_ts = self._clock()
        self._phase = FetchPhase.LISTING

        self._list_updated = False
        self._total_list_items = -1
        self._list = {}
        self._first_list_id = 0

        self._list_entries()

    def _list_entries(self) -> None:
        msg = None

        if self._total_list_items <= 0:
            LOG.debug("request all entries")
            msg = self._codec.log_request_list(
                self._target_system, self._target_component, 0, LIST_ALL
            )
        else:
            first = self._first_list_id
            for i in range(first, first + self._total_list_items):
                if i not in self._list:
                    LOG.debug("request entry %d", i)
                    msg = self._codec.log_request_list(
                        self._target_system, self._target_component, i, i
                    )
                    break

        if msg is not None:
            self._last_action_ts = self._clock()
            self._send_message(msg)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _select_target(self) -> None:
        entry = self._catalog.next_incomplete(reverse=self._reverse)
        if entry is not None:
            self._start_fetching(entry.id)

    def _start_fetching(self, log_id: int) -> None:
        self._current_id = log_id
        entry = self._catalog.entry_by_id(log_id)

        if entry is None:
            LOG.error("log entry %d doesn't exist", log_id)
            self._start_listing()
            return

        LOG.debug("starting fetch for log %d from %d", entry.id, entry.fetched)

        now = self._clock()
        self._last_action_ts = now
        self._last_received_ts = now
        self._phase = FetchPhase.FETCHING

        path = self._catalog.output_path(entry, in_progress=True)
        self._release_sink()
        try:
            self._align_partial_file(entry, path)
            sink = self._sink_factory(path)
        except OSError as exc:
            self._fail(f"cannot open {path}: {exc}")
            return

        self._sink = sink
        sink.set_on_drain(partial(self._on_sink_drain, sink))
        self._writing_blocked = False

        # resume where the last durable block ended
        self._block_offset = entry.fetched
        req_size = min(self._block_size, entry.size - self._block_offset)
        self._block_missing = [(self._block_offset, self._block_offset + req_size)]
        self._block_buffer = bytearray(self._block_size)

        self._fetch_data()

    def _align_partial_file(self, entry: LogEntry, path: str) -> None:
        """Make the partial file and entry.fetched agree before appending."""
        if not os.path.exists(path):
            if entry.fetched > 0:
                LOG.warning("partial file missing for log %d (entry %d); restarting it",
                            entry.id, entry.fetched)
                entry.fetched = 0
                self._catalog.save()
            return

        file_size = os.path.getsize(path)

        if file_size > entry.fetched:
            # data written but the catalog was not saved
            LOG.warning("file and entry size don't match: file %d, entry %d; truncating file",
                        file_size, entry.fetched)
            os.truncate(path, entry.fetched)

        elif file_size < entry.fetched:
            # catalog saved but the data never reached the disk
            LOG.warning("correcting since file size is smaller than entry size: file %d, entry %d",
                        file_size, entry.fetched)
            entry.fetched = file_size
            self._catalog.save()

    def _fetch_data(self) -> None:
        if self._writing_blocked:
            LOG.debug("writing blocked")
            return

        if not self._block_missing:
            return

        start, end = self._block_missing.pop()

        self._current_request_offset = start
        self._current_request_size = end - start
        self._next_data_offset = start
        self._received_data_offset = start

        msg = self._codec.log_request_data(
            self._target_system,
            self._target_component,
            self._current_id,
            self._current_request_offset,
            self._current_request_size,
        )

        LOG.debug("fetch %d - %d (%d)", start, end, (end - start) // LOG_DATA_PAYLOAD)

        self._last_action_ts = self._clock()
        self._send_message(msg)

    def _on_request_complete(self) -> None:
        entry = self._catalog.entry_by_id(self._current_id)
        if entry is None:
            LOG.error("log entry %d vanished during fetch", self._current_id)
            self._start_listing()
            return

        if self._current_request_offset == self._block_offset:
            LOG.debug("missing %d chunks from block", len(self._block_missing))

        if self._block_missing:
            LOG.debug("chunks %d", len(self._block_missing))
            self._fetch_data()
            return

        sink = self._sink
        if sink is None:
            self._fail(f"no open output file for log {entry.id}")
            return

        self._phase = FetchPhase.WRITING

        if self._block_offset + self._block_size >= entry.size:
            data = bytes(self._block_buffer[: entry.size - self._block_offset])
            self._write_block(sink, data, partial(self._on_log_written, sink, entry))
        else:
            LOG.debug("next block %d", len(self._block_missing))
            fetched = self._block_offset + self._block_size
            data = bytes(self._block_buffer)
            self._write_block(sink, data, partial(self._on_block_written, sink, entry, fetched))

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def _write_block(self, sink: LogSink, data: bytes, on_written: Callable[[], None]) -> None:
        try:
            accepted = sink.write(data, on_written)
        except OSError as exc:
            self._fail(f"write to {sink.path} failed: {exc}")
            return

        if not accepted and sink is self._sink:
            self._writing_blocked = True
            LOG.debug("writing blocked by sink")

    def _on_block_written(self, sink: LogSink, entry: LogEntry, fetched: int) -> None:
        if sink is not self._sink or self._phase != FetchPhase.WRITING:
            LOG.debug("ignoring stale write completion for log %d", entry.id)
            return

        entry.fetched = fetched
        self._catalog.save()

        self._block_offset += self._block_size
        req_size = min(self._block_size, entry.size - self._block_offset)
        self._block_missing.append((self._block_offset, self._block_offset + req_size))

        self._phase = FetchPhase.FETCHING
        self._fetch_data()

    def _on_log_written(self, sink: LogSink, entry: LogEntry) -> None:
        if sink is not self._sink or self._phase != FetchPhase.WRITING:
            LOG.debug("ignoring stale write completion for log %d", entry.id)
            return

        self._release_sink()

        entry.fetched = entry.size
        self._catalog.save()

        # drop the leading dot: a visible file is a complete file
        final_path = self._catalog.output_path(entry, in_progress=False)
        try:
            os.replace(sink.path, final_path)
        except OSError as exc:
            LOG.error("Could not remove the leading dot from %s: %s", sink.path, exc)

        self._phase = FetchPhase.STANDBY
        LOG.debug("downloaded log %d", entry.id)

        if self._on_downloaded is not None:
            self._on_downloaded(entry.id)

    def _on_sink_drain(self, sink: LogSink) -> None:
        if sink is not self._sink:
            return

        self._writing_blocked = False
        LOG.debug("writing blocked released")

        if self._phase == FetchPhase.FETCHING and self._block_missing:
            self._fetch_data()

    def _release_sink(self) -> None:
        sink = self._sink
        self._sink = None
        self._writing_blocked = False
        if sink is not None:
            sink.set_on_drain(None)
            sink.close()

    def _fail(self, reason: str) -> None:
        LOG.error("log fetch error: %s", reason)
        self._release_sink()
        self._status = LogFetcherStatus.ERROR
        self._phase = FetchPhase.STANDBY

    # ------------------------------------------------------------------
    # Periodic tick
    # ------------------------------------------------------------------

    def check_for_timeout(self, now: Optional[float] = None) -> None:
        if now is None:
            now = self._clock()

        if self._status != LogFetcherStatus.RUNNING:
            return

        if self._phase == FetchPhase.STANDBY:
            if self._list_updated:
                self._select_target()
            return

        self._update_rate(now)

        if self._phase == FetchPhase.FETCHING and now - self._prev_progress_time > PROGRESS_INTERVAL:
            self._report_progress()
            self._prev_progress_time = now

        stalled = now - self._last_received_ts > STALL_TIMEOUT

        if stalled and self._phase == FetchPhase.FETCHING:
            LOG.error("long timeout, resetting")
            self._start_listing()
            return

        if stalled and self._phase == FetchPhase.WRITING:
            LOG.error("write block, resetting")
            self._start_listing()
            return

        if self._phase == FetchPhase.LISTING:
            if (now - self._last_action_ts > LIST_RETRY_TIMEOUT
                    and now - self._last_received_ts > LIST_RETRY_TIMEOUT):
                LOG.warning("list timeout")
                self._list_entries()

        if self._phase == FetchPhase.FETCHING and not self._writing_blocked:
            if (now - self._last_action_ts > self._request_timeout
                    and now - self._last_received_ts > self._request_timeout):
                # only re-request from the last contiguous offset
                LOG.debug("fetch timeout")
                self._block_missing.append((
                    self._received_data_offset,
                    self._current_request_offset + self._current_request_size,
                ))
                self._fetch_data()

    def _update_rate(self, now: float) -> None:
        elapsed = now - self._average_rate_time
        if elapsed <= RATE_WINDOW:
            return

        if self._data_received > 0:
            sample = (self._data_received / 1024.0) / elapsed
            self._average_rate = self._average_rate * RATE_SMOOTHING + sample * (1.0 - RATE_SMOOTHING)

        self._data_received = 0
        self._average_rate_time = now

    def _report_progress(self) -> None:
        entry = self._catalog.entry_by_id(self._current_id)
        if entry is None:
            return

        progress = TransferProgress(
            log_id=self._current_id,
            log_total=self._total_list_items,
            download_rate=self._average_rate,
            log_fetched_bytes=entry.fetched,
            log_total_bytes=entry.size,
            total_fraction=self._catalog.total_fraction(),
        )

        LOG.debug(
            "fetching log %d of %d at %dkB/s. %d%% (%.2f/%.2fMB), %d%% of total",
            progress.log_id,
            progress.log_total,
            round(progress.download_rate),
            round(entry.fetched / entry.size * 100) if entry.size else 100,
            entry.fetched / 1e6,
            entry.size / 1e6,
            round(progress.total_fraction * 100),
        )

        if self._on_progress is not None:
            self._on_progress(progress)
