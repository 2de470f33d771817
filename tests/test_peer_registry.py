import pytest
from pymavlink.dialects.v20 import common as mavlink

from mavlink_codec import LIST_ALL, MavlinkCodec
from peer_registry import PeerRegistry


class FakeLink:
    def __init__(self):
        self.sent = []

    def start(self):
        pass

    def stop(self):
        pass

    def send(self, payload):
        self.sent.append(payload)


def vehicle(sysid, compid=mavlink.MAV_COMP_ID_AUTOPILOT1):
    return mavlink.MAVLink(None, srcSystem=sysid, srcComponent=compid)


def frame(enc, msg):
    return bytes(msg.pack(enc))


def heartbeat(enc, autopilot=mavlink.MAV_AUTOPILOT_PX4):
    return frame(enc, enc.heartbeat_encode(
        mavlink.MAV_TYPE_QUADROTOR, autopilot, 0, 0, mavlink.MAV_STATE_STANDBY, 3))


def position(enc, lat=473977418):
    return frame(enc, enc.global_position_int_encode(0, lat, 85455939, 488000, 0, 0, 0, 0, 0))


def vfr(enc, groundspeed=5.0):
    return frame(enc, enc.vfr_hud_encode(1.0, groundspeed, 0, 0, 0.0, 0.0))


@pytest.fixture
def registry(clock):
    return PeerRegistry(MavlinkCodec(wire_version=2), clock=clock)


def test_autopilot_heartbeat_creates_peer(registry):
    new = []
    registry.set_on_new_peer(new.append)

    assert registry.feed(heartbeat(vehicle(1))) == 1

    assert list(registry.peers()) == [1]
    assert [p.peer_id for p in new] == [1]
    assert registry.peers()[1].connected

    registry.feed(heartbeat(vehicle(1)))
    assert len(new) == 1


def test_non_autopilot_sources_do_not_create_peers(registry):
    registry.feed(heartbeat(vehicle(2, compid=mavlink.MAV_COMP_ID_CAMERA)))
    registry.feed(heartbeat(vehicle(3), autopilot=mavlink.MAV_AUTOPILOT_INVALID))
    registry.feed(position(vehicle(4)))

    assert registry.peers() == {}


def test_universal_peer_sees_union(registry):
    universal = registry.get_universal_peer()
    one, two = vehicle(1), vehicle(2)

    registry.feed(heartbeat(one) + heartbeat(two))
    registry.feed(position(one))
    registry.feed(vfr(two, groundspeed=10.0))

    peers = registry.peers()
    assert set(peers) == {1, 2}
    assert 0 not in peers

    assert peers[1].telemetry.position.valid
    assert peers[1].telemetry.hud.groundspeed == 0.0
    assert not peers[2].telemetry.position.valid
    assert peers[2].telemetry.hud.groundspeed == pytest.approx(36.0)

    assert universal.telemetry.position.valid
    assert universal.telemetry.hud.groundspeed == pytest.approx(36.0)
    assert universal.connected


def test_universal_peer_sees_unregistered_sources(registry):
    universal = registry.get_universal_peer()
    assert registry.get_universal_peer() is universal

    registry.feed(position(vehicle(9)))
    assert universal.telemetry.position.valid
    assert registry.peers() == {}


def test_manual_peer_creation(registry):
    peer = registry.get_peer(7)
    assert registry.get_peer(7) is peer
    assert registry.peers() == {7: peer}

    registry.feed(position(vehicle(7)))
    assert peer.telemetry.position.valid


def test_get_peer_zero_is_universal(registry):
    assert registry.get_peer(0) is registry.get_universal_peer()
    assert registry.peers() == {}


def test_find_peer_does_not_create(registry):
    assert registry.find_peer(5) is None
    assert registry.find_peer(0) is None

    registry.feed(heartbeat(vehicle(5)))
    assert registry.find_peer(5) is registry.peers()[5]

    universal = registry.get_universal_peer()
    assert registry.find_peer(0) is universal
    assert registry.peers().keys() == {5}


def test_send_message_reaches_link(registry):
    link = FakeLink()
    registry.attach_link(link)

    peer = registry.get_peer(1)
    peer.send_message(MavlinkCodec().log_request_list(0, 0, 0, LIST_ALL))

    assert len(link.sent) == 1
    msg = mavlink.MAVLink(None).parse_char(link.sent[0])
    assert msg.get_type() == "LOG_REQUEST_LIST"
    assert msg.end == LIST_ALL

    registry.attach_link(None)
    registry.send_message(MavlinkCodec().log_request_list(0, 0, 0, LIST_ALL))
    assert len(link.sent) == 1


def test_check_liveness_covers_all_peers(registry, clock):
    universal = registry.get_universal_peer()
    registry.feed(heartbeat(vehicle(1)) + heartbeat(vehicle(2)))

    clock.advance(11.0)
    registry.check_liveness()

    assert not any(p.connected for p in registry.peers().values())
    assert not universal.connected


def test_check_log_fetchers_ticks_engines(registry, clock, tmp_path):
    link = FakeLink()
    registry.attach_link(link)
    fetcher = registry.get_universal_peer().get_log_fetcher(str(tmp_path), request_timeout=0.2)
    fetcher.start()
    assert len(link.sent) == 1

    clock.advance(10.5)
    registry.check_log_fetchers()
    assert len(link.sent) == 2


def test_garbage_is_ignored(registry):
    registry.get_universal_peer()
    assert registry.feed(b"\x01\x02\x03not mavlink") == 0
    assert registry.peers() == {}
