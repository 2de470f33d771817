"""
Output sinks for downloaded log data.

A sink accepts block writes and confirms each one through a callback once
the bytes are durable. `write()` returns False when the sink is saturated;
the writer should then hold further work until the drain callback fires.

The file sink below writes synchronously (flush + fsync) and therefore
confirms before `write()` returns and never saturates. Deferred sinks
only need to honor the same contract.
"""

from __future__ import annotations

import logging
import os
from typing import BinaryIO, Callable, Optional, Protocol

LOG = logging.getLogger(__name__)


class LogSink(Protocol):
    """Minimal sink interface used by LogFetcher."""

    @property
    def path(self) -> str: ...
    def write(self, data: bytes, on_written: Callable[[], None]) -> bool: ...
    def set_on_drain(self, cb: Optional[Callable[[], None]]) -> None: ...
    def close(self) -> None: ...


SinkFactory = Callable[[str], LogSink]


class LogFileSink:
    """Appends to a file; each write is fsynced before it is confirmed."""

    def __init__(self, path: str) -> None:
        self._path = str(path)
        self._file: Optional[BinaryIO] = open(self._path, "ab")
        self._on_drain: Optional[Callable[[], None]] = None

    @property
    def path(self) -> str:
        return self._path

    @property
    def closed(self) -> bool:
        return self._file is None

    def set_on_drain(self, cb: Optional[Callable[[], None]]) -> None:
        self._on_drain = cb

    def write(self, data: bytes, on_written: Callable[[], None]) -> bool:
        if self._file is None:
            raise OSError(f"write to closed sink {self._path}")

        self._file.write(data)
        self._file.flush()
        os.fsync(self._file.fileno())
        on_written()
        return True

    def close(self) -> None:
        if self._file is None:
            return
        try:
            self._file.close()
        except OSError:
            LOG.warning("Error closing log file %s", self._path, exc_info=True)
        self._file = None
