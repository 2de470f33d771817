from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import mavlink_codec as codec_consts
from log_fetcher import LogFetcher

LOG = logging.getLogger(__name__)

HEARTBEAT_TIMEOUT = 10.0

# custom_mode bits 16..23
BASE_MODES = [
    "none",
    "Manual",
    "Altitude",
    "Position",
    "Auto",
    "Acro",
    "Offboard",
    "Stabilised",
]

# custom_mode bits 24..31, only meaningful in Auto
AUTO_SUB_MODES = [
    "none",
    "Ready",
    "Takeoff",
    "Loiter",
    "Mission",
    "RTL",
    "Land",
    "RTGS",
    "Follow",
]

BASE_MODE_AUTO = 4

SAFETY_ENABLED_BIT = 0x02

MS_TO_KMH = 3.6


def decode_flight_mode(custom_mode: int) -> str:
    base = (custom_mode & 0xFF0000) >> 16
    sub = (custom_mode & 0xFF000000) >> 24

    if base >= len(BASE_MODES) or sub >= len(AUTO_SUB_MODES):
        return "invalid"
    if base == BASE_MODE_AUTO:
        return AUTO_SUB_MODES[sub]
    return BASE_MODES[base]


def landed_state_label(landed_state: int) -> str:
    if landed_state == codec_consts.MAV_LANDED_STATE_IN_AIR:
        return "On route"
    if landed_state == codec_consts.MAV_LANDED_STATE_TAKEOFF:
        return "Takeoff"
    if landed_state == codec_consts.MAV_LANDED_STATE_LANDING:
        return "Landing"
    return "On ground"


@dataclass
class PositionInfo:
    valid: bool = False
    lat: Optional[float] = None
    lon: Optional[float] = None
    alt: Optional[float] = None


@dataclass
class HudInfo:
    hdg: Optional[float] = None
    airspeed: float = 0.0
    groundspeed: float = 0.0
    roll: float = 0.0
    pitch: float = 0.0
    landed_state: str = "unknown"
    flight_mode: str = "unknown"
    armed_state: str = "unknown"
    safety_state: str = "unknown"


@dataclass
class CommsInfo:
    connected: bool = False
    last_heartbeat: float = 0.0


@dataclass
class PeerTelemetry:
    position: PositionInfo = field(default_factory=PositionInfo)
    hud: HudInfo = field(default_factory=HudInfo)
    comms: CommsInfo = field(default_factory=CommsInfo)


class Peer:
    """
    One remote vehicle (MAVLink system id) seen on the link.

    - Projects incoming telemetry into a PeerTelemetry snapshot.
    - Tracks heartbeat liveness (polled via check_liveness()).
    - Owns at most one LogFetcher, created on first request.
    """

    def __init__(
            self,
            peer_id: int,
            codec: Any,
            send_message: Callable[[Any], None],
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._peer_id = int(peer_id)
        self._codec = codec
        self._send_message = send_message
        self._clock = clock

        self.telemetry = PeerTelemetry()
        self.last_update = 0.0
        self._latest: Dict[str, Any] = {}

        self._last_custom_mode = 0
        self._last_landed_state = 0
        self._last_system_status = 0
        self._last_safety_state = 0

        self._log_fetcher: Optional[LogFetcher] = None

        self._on_status_changed: Optional[Callable[[Peer], None]] = None
        self._on_message: Optional[Callable[[Peer, Any], None]] = None

    @property
    def peer_id(self) -> int:
        return self._peer_id

    @property
    def connected(self) -> bool:
        return self.telemetry.comms.connected

    @property
    def log_fetcher(self) -> Optional[LogFetcher]:
        return self._log_fetcher

    def set_on_status_changed(self, cb: Optional[Callable[[Peer], None]]) -> None:
        """cb(peer) on mode, armed, landed, safety or connection change."""
        self._on_status_changed = cb

    def set_on_message(self, cb: Optional[Callable[[Peer, Any], None]]) -> None:
        """cb(peer, msg) for every message this peer receives."""
        self._on_message = cb

    def latest(self, msg_type: str) -> Optional[Any]:
        return self._latest.get(msg_type)

    def send_message(self, msg: Any) -> None:
        self._send_message(msg)

    def get_log_fetcher(
            self,
            log_path: str,
            reverse: bool = False,
            request_timeout: Optional[float] = None,
            **kwargs: Any,
    ) -> LogFetcher:
        if self._log_fetcher is None:
            self._log_fetcher = LogFetcher(
                codec=self._codec,
                send_message=self._send_message,
                log_path=log_path,
                reverse=reverse,
                request_timeout=request_timeout,
                clock=self._clock,
                **kwargs,
            )
        elif self._log_fetcher.catalog.log_path != str(log_path):
            LOG.warning("System %d already fetches logs into %s",
                        self._peer_id, self._log_fetcher.catalog.log_path)
        return self._log_fetcher

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    def check_liveness(self, now: Optional[float] = None) -> None:
        if now is None:
            now = self._clock()

        comms = self.telemetry.comms
        if comms.connected and now > comms.last_heartbeat + HEARTBEAT_TIMEOUT:
            comms.connected = False
            LOG.warning("System %d lost connection", self._peer_id)
            self._notify_status_changed()

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def update(self, msg: Any) -> None:
        now = self._clock()
        msg_type = msg.get_type()
        status_changed = False

        self.last_update = now
        self._latest[msg_type] = msg

        if msg_type == "STATUSTEXT":
            LOG.info("Sys %d; %s: %s", self._peer_id, msg.severity, msg.text)

        elif msg_type == "EXTENDED_SYS_STATE":
            self.telemetry.hud.landed_state = landed_state_label(msg.landed_state)
            if self._last_landed_state != msg.landed_state:
                status_changed = True
                self._last_landed_state = msg.landed_state

        elif msg_type == "HEARTBEAT":
            status_changed = self._apply_heartbeat(msg, now)

        elif msg_type == "EXTENDED_HUD":
            enabled = (msg.safety_state & SAFETY_ENABLED_BIT) != 0
            self.telemetry.hud.safety_state = "Enabled" if enabled else "Disabled"
            if self._last_safety_state != msg.safety_state:
                status_changed = True
                self._last_safety_state = msg.safety_state

        elif msg_type == "GLOBAL_POSITION_INT":
            pos = self.telemetry.position
            pos.lat = msg.lat / 1e7
            pos.lon = msg.lon / 1e7
            pos.alt = msg.alt / 1e3
            pos.valid = True
            self.telemetry.hud.hdg = msg.hdg / 1e2

        elif msg_type == "VFR_HUD":
            self.telemetry.hud.groundspeed = msg.groundspeed * MS_TO_KMH
            self.telemetry.hud.airspeed = msg.airspeed * MS_TO_KMH

        elif msg_type == "ATTITUDE":
            hud = self.telemetry.hud
            hud.roll = math.degrees(msg.roll)
            hud.pitch = math.degrees(msg.pitch)
            hud.hdg = math.degrees(msg.yaw)

        if status_changed:
            self._notify_status_changed()

        if self._log_fetcher is not None:
            self._log_fetcher.on_message(msg)

        if self._on_message is not None:
            self._on_message(self, msg)

    def _apply_heartbeat(self, msg: Any, now: float) -> bool:
        hud = self.telemetry.hud
        comms = self.telemetry.comms
        changed = False

        if self._last_custom_mode != msg.custom_mode:
            prev = hud.flight_mode
            hud.flight_mode = decode_flight_mode(int(msg.custom_mode))
            LOG.info("Flight mode changed from %s to %s", prev, hud.flight_mode)
            self._last_custom_mode = msg.custom_mode
            changed = True

        if self._last_system_status != msg.system_status:
            if msg.system_status == codec_consts.MAV_STATE_ACTIVE:
                hud.armed_state = "Armed"
            else:
                hud.armed_state = "Disarmed"
            LOG.info("System status changed to %d", msg.system_status)
            self._last_system_status = msg.system_status
            changed = True

        if not comms.connected:
            LOG.warning("System %d connected", self._peer_id)

        comms.last_heartbeat = now
        comms.connected = True
        return changed

    def _notify_status_changed(self) -> None:
        if self._on_status_changed is not None:
            self._on_status_changed(self)
