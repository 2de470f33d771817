import os
import sys
from typing import Any, Callable, List, Optional, Tuple

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pymavlink.dialects.v20 import common as mavlink  # noqa: E402

from log_fetcher import LogFetcher  # noqa: E402
from mavlink_codec import MavlinkCodec  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class Recorder:
    """Stands in for Registry.send_message; keeps every outbound message."""

    def __init__(self) -> None:
        self.messages: List[Any] = []

    def __call__(self, msg: Any) -> None:
        self.messages.append(msg)

    def of_type(self, msg_type: str) -> List[Any]:
        return [m for m in self.messages if m.get_type() == msg_type]

    @property
    def last(self) -> Any:
        return self.messages[-1]

    def clear(self) -> None:
        self.messages.clear()


class DeferredSink:
    """Sink whose writes complete only when the test says so."""

    def __init__(self, path: str, accept: bool = True) -> None:
        self._path = path
        self.accept = accept
        self.pending: List[Tuple[bytes, Callable[[], None]]] = []
        self.closed = False
        self.on_drain: Optional[Callable[[], None]] = None

    @property
    def path(self) -> str:
        return self._path

    def set_on_drain(self, cb: Optional[Callable[[], None]]) -> None:
        self.on_drain = cb

    def write(self, data: bytes, on_written: Callable[[], None]) -> bool:
        self.pending.append((data, on_written))
        return self.accept

    def complete_all(self) -> None:
        pending, self.pending = self.pending, []
        for data, on_written in pending:
            with open(self._path, "ab") as f:
                f.write(data)
            on_written()

    def drain(self) -> None:
        self.accept = True
        if self.on_drain is not None:
            self.on_drain()

    def close(self) -> None:
        self.closed = True


class FakeMessage:
    """Minimal message for types the common dialect does not define."""

    def __init__(self, msg_type: str, **fields: Any) -> None:
        self._type = msg_type
        self.__dict__.update(fields)

    def get_type(self) -> str:
        return self._type


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sent() -> Recorder:
    return Recorder()


@pytest.fixture
def codec() -> MavlinkCodec:
    return MavlinkCodec(source_system=255, source_component=0, wire_version=2)


@pytest.fixture
def remote():
    """Encoder playing the vehicle (system 1, autopilot component)."""
    return mavlink.MAVLink(None, srcSystem=1, srcComponent=mavlink.MAV_COMP_ID_AUTOPILOT1)


@pytest.fixture
def deferred_sinks():
    created: List[DeferredSink] = []

    def factory(path: str) -> DeferredSink:
        sink = DeferredSink(path)
        created.append(sink)
        return sink

    factory.created = created  # type: ignore[attr-defined]
    return factory


@pytest.fixture
def make_fetcher(tmp_path, clock, sent, codec):
    def _make(**kwargs: Any) -> LogFetcher:
        kwargs.setdefault("request_timeout", 0.2)
        return LogFetcher(
            codec=codec,
            send_message=sent,
            log_path=str(tmp_path),
            clock=clock,
            **kwargs,
        )

    return _make


def log_entry(remote, log_id: int, num_logs: int, utc: int, size: int):
    return remote.log_entry_encode(log_id, num_logs, max(num_logs - 1, 0), utc, size)


def list_logs(fetcher: LogFetcher, remote, entries) -> None:
    """Answer a full list request with `entries` = [(id, utc, size), ...]."""
    for log_id, utc, size in entries:
        fetcher.on_message(log_entry(remote, log_id, len(entries), utc, size))


def serve(fetcher: LogFetcher, remote, log_id: int, content: bytes, ofs: int, count: int,
          skip: Tuple[int, ...] = ()) -> None:
    """Answer LOG_REQUEST_DATA(ofs, count) with 90-byte LOG_DATA chunks."""
    end = min(ofs + count, len(content))
    pos = ofs
    while pos < end:
        n = min(90, end - pos)
        if pos not in skip:
            chunk = list(content[pos:pos + n]) + [0] * (90 - n)
            fetcher.on_message(remote.log_data_encode(log_id, pos, n, chunk))
        pos += n


def content_of(size: int, seed: int = 7) -> bytes:
    return bytes((i * seed + i // 256) & 0xFF for i in range(size))
