"""
Peer registry: demultiplexes one MAVLink link into per-vehicle peers.

Data path:

    link rx bytes -> feed() -> codec.decode() -> dispatch() -> Peer.update()

Every message also goes to the universal peer (system id 0) once it has
been requested, so link-wide observers do not need to know system ids.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, Protocol

import mavlink_codec as codec_consts
from vehicle_peer import Peer

LOG = logging.getLogger(__name__)

UNIVERSAL_PEER_ID = 0


class LinkClient(Protocol):
    """Minimal link interface used by the registry.

    Any concrete implementation (TcpLink, UdpLink, SerialLink) provides:

        start() -> None
        stop() -> None
        send(payload: bytes) -> None
    """

    def start(self) -> None: ...
    def stop(self) -> None: ...
    def send(self, payload: bytes) -> None: ...


class PeerRegistry:
    def __init__(
            self,
            codec: Any,
            on_new_peer: Optional[Callable[[Peer], None]] = None,
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._codec = codec
        self._on_new_peer = on_new_peer
        self._clock = clock

        self._peers: Dict[int, Peer] = {}
        self._universal: Optional[Peer] = None
        self._link: Optional[LinkClient] = None

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach_link(self, link: Optional[LinkClient]) -> None:
        """Route encoded outbound messages to `link.send`."""
        self._link = link
        if link is None:
            self._codec.set_send_bytes(None)
        else:
            self._codec.set_send_bytes(link.send)

    def set_on_new_peer(self, cb: Optional[Callable[[Peer], None]]) -> None:
        self._on_new_peer = cb

    # ------------------------------------------------------------------
    # Peers
    # ------------------------------------------------------------------

    def get_universal_peer(self) -> Peer:
        if self._universal is None:
            self._universal = self._new_peer(UNIVERSAL_PEER_ID)
        return self._universal

    def get_peer(self, peer_id: int) -> Peer:
        if peer_id == UNIVERSAL_PEER_ID:
            return self.get_universal_peer()

        peer = self._peers.get(peer_id)
        if peer is None:
            LOG.info("System created manually %d", peer_id)
            peer = self._new_peer(peer_id)
            self._peers[peer_id] = peer
        return peer

    def find_peer(self, peer_id: int) -> Optional[Peer]:
        if peer_id == UNIVERSAL_PEER_ID:
            return self._universal
        return self._peers.get(peer_id)

    def peers(self) -> Dict[int, Peer]:
        """Snapshot of per-vehicle peers (the universal peer excluded)."""
        return dict(self._peers)

    def _new_peer(self, peer_id: int) -> Peer:
        return Peer(peer_id, self._codec, self.send_message, clock=self._clock)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send_message(self, msg: Any) -> None:
        self._codec.send(msg)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def feed(self, data: bytes) -> int:
        """Decode raw link bytes and dispatch every complete message."""
        messages = self._codec.decode(data)
        for msg in messages:
            self.dispatch(msg)
        return len(messages)

    def dispatch(self, msg: Any) -> None:
        get_src = getattr(msg, "get_srcSystem", None)
        if get_src is None:
            return

        sysid = int(get_src())

        if msg.get_type() == "HEARTBEAT" and sysid not in self._peers:
            # only autopilots become peers, not GCSs, cameras, ...
            accept = (
                msg.autopilot != codec_consts.MAV_AUTOPILOT_INVALID
                and msg.get_srcComponent() == codec_consts.MAV_COMP_ID_AUTOPILOT1
            )
            if accept and sysid != UNIVERSAL_PEER_ID:
                LOG.info("New system %d", sysid)
                peer = self._new_peer(sysid)
                self._peers[sysid] = peer
                if self._on_new_peer is not None:
                    self._on_new_peer(peer)

        peer = self._peers.get(sysid)
        if peer is not None:
            peer.update(msg)

        if self._universal is not None:
            self._universal.update(msg)

    # ------------------------------------------------------------------
    # Periodic tick
    # ------------------------------------------------------------------

    def check_liveness(self, now: Optional[float] = None) -> None:
        if now is None:
            now = self._clock()
        for peer in list(self._peers.values()):
            peer.check_liveness(now)
        if self._universal is not None:
            self._universal.check_liveness(now)

    def check_log_fetchers(self, now: Optional[float] = None) -> None:
        """Tick every peer's log fetcher, if it has one."""
        if now is None:
            now = self._clock()
        peers = list(self._peers.values())
        if self._universal is not None:
            peers.append(self._universal)
        for peer in peers:
            fetcher = peer.log_fetcher
            if fetcher is not None:
                fetcher.check_for_timeout(now)
