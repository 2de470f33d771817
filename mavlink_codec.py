"""
MAVLink codec adapter.

Wraps a pymavlink `MAVLink` instance so the rest of the stack only sees:

    decode(data: bytes) -> list of messages
    encode(msg) -> bytes
    send(msg) -> None   (encode + hand bytes to the link)

The wire version is a field on the codec instance rather than process
state, so several links at different versions can share one process:

    0 = auto-sense: emit v1 until a v2 frame has been received, then v2
    1 = always emit v1 frames
    2 = always emit v2 frames

Decoding accepts both versions regardless of the setting.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from pymavlink.dialects.v20 import common as mavlink

LOG = logging.getLogger(__name__)

MAVLINK_V2_MAGIC = 0xFD

# log_request_list end index meaning "every entry"
LIST_ALL = 0xFFFF

# bytes carried by one LOG_DATA message
LOG_DATA_PAYLOAD = 90

MAV_COMP_ID_AUTOPILOT1 = mavlink.MAV_COMP_ID_AUTOPILOT1
MAV_AUTOPILOT_INVALID = mavlink.MAV_AUTOPILOT_INVALID
MAV_STATE_ACTIVE = mavlink.MAV_STATE_ACTIVE
MAV_LANDED_STATE_IN_AIR = mavlink.MAV_LANDED_STATE_IN_AIR
MAV_LANDED_STATE_TAKEOFF = mavlink.MAV_LANDED_STATE_TAKEOFF
MAV_LANDED_STATE_LANDING = mavlink.MAV_LANDED_STATE_LANDING

_DROPPED_TYPES = ("BAD_DATA",)


class _ByteSink:
    """File-like target for pymavlink's `send()`."""

    def __init__(self, codec: "MavlinkCodec") -> None:
        self._codec = codec

    def write(self, buf: Any) -> None:
        self._codec._emit(bytes(buf))


class MavlinkCodec:
    def __init__(
            self,
            source_system: int = 255,
            source_component: int = 0,
            wire_version: int = 0,
            send_bytes: Optional[Callable[[bytes], None]] = None,
    ) -> None:
        if wire_version not in (0, 1, 2):
            raise ValueError("wire_version must be one of: 0, 1, 2")

        self._wire_version = wire_version
        self._v2_seen = False
        self._send_bytes = send_bytes

        self._mav = mavlink.MAVLink(_ByteSink(self), source_system, source_component)
        self._mav.robust_parsing = True

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def wire_version(self) -> int:
        return self._wire_version

    @property
    def source_system(self) -> int:
        return self._mav.srcSystem

    @property
    def source_component(self) -> int:
        return self._mav.srcComponent

    def effective_wire_version(self) -> int:
        """Version of the frames `encode` currently produces (1 or 2)."""
        if self._wire_version == 0:
            return 2 if self._v2_seen else 1
        return self._wire_version

    def set_send_bytes(self, send_bytes: Optional[Callable[[bytes], None]]) -> None:
        self._send_bytes = send_bytes

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    def decode(self, data: bytes) -> List[Any]:
        if not data:
            return []

        parsed = self._mav.parse_buffer(bytes(data))
        if not parsed:
            return []

        messages: List[Any] = []
        for msg in parsed:
            msg_type = msg.get_type()
            if msg_type in _DROPPED_TYPES or msg_type.startswith("UNKNOWN"):
                LOG.debug("dropping undecodable frame (%s)", msg_type)
                continue

            if self._wire_version == 0 and not self._v2_seen:
                msgbuf = msg.get_msgbuf()
                if msgbuf and msgbuf[0] == MAVLINK_V2_MAGIC:
                    LOG.info("MAVLink v2 frame received; switching to v2 output")
                    self._v2_seen = True

            messages.append(msg)
        return messages

    # ------------------------------------------------------------------
    # Encode / send
    # ------------------------------------------------------------------

    def encode(self, msg: Any) -> bytes:
        """Pack `msg` with our source ids and the current sequence number."""
        return bytes(msg.pack(self._mav, force_mavlink1=self.effective_wire_version() == 1))

    def send(self, msg: Any) -> None:
        self._mav.send(msg, force_mavlink1=self.effective_wire_version() == 1)

    def _emit(self, data: bytes) -> None:
        if self._send_bytes is not None:
            self._send_bytes(data)

    # ------------------------------------------------------------------
    # Message factories
    # ------------------------------------------------------------------

    def log_request_list(
            self,
            target_system: int,
            target_component: int,
            start: int,
            end: int,
    ) -> Any:
        return self._mav.log_request_list_encode(target_system, target_component, start, end)

    def log_request_data(
            self,
            target_system: int,
            target_component: int,
            log_id: int,
            offset: int,
            count: int,
    ) -> Any:
        return self._mav.log_request_data_encode(
            target_system, target_component, log_id, offset, count
        )
