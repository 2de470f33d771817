import math

import pytest
from pymavlink.dialects.v20 import common as mavlink

from conftest import FakeMessage, log_entry
from log_fetcher import FetchPhase
from vehicle_peer import HEARTBEAT_TIMEOUT, Peer, decode_flight_mode


def custom_mode(base, sub=0):
    return (base << 16) | (sub << 24)


def heartbeat(remote, mode=0, status=mavlink.MAV_STATE_STANDBY):
    return remote.heartbeat_encode(
        mavlink.MAV_TYPE_QUADROTOR,
        mavlink.MAV_AUTOPILOT_PX4,
        mavlink.MAV_MODE_FLAG_CUSTOM_MODE_ENABLED,
        mode,
        status,
        3,
    )


@pytest.fixture
def peer(codec, sent, clock):
    return Peer(1, codec, sent, clock=clock)


def test_flight_mode_tables():
    assert decode_flight_mode(custom_mode(1)) == "Manual"
    assert decode_flight_mode(custom_mode(3)) == "Position"
    assert decode_flight_mode(custom_mode(7)) == "Stabilised"
    assert decode_flight_mode(custom_mode(4, 4)) == "Mission"
    assert decode_flight_mode(custom_mode(4, 8)) == "Follow"
    assert decode_flight_mode(custom_mode(8)) == "invalid"
    assert decode_flight_mode(custom_mode(4, 9)) == "invalid"
    assert decode_flight_mode(custom_mode(3, 9)) == "invalid"


def test_heartbeat_connects_and_projects_status(peer, remote):
    changes = []
    peer.set_on_status_changed(changes.append)

    peer.update(heartbeat(remote, custom_mode(4, 5), mavlink.MAV_STATE_ACTIVE))

    hud = peer.telemetry.hud
    assert peer.connected
    assert hud.flight_mode == "RTL"
    assert hud.armed_state == "Armed"
    assert changes == [peer]

    # same heartbeat again: nothing changed
    peer.update(heartbeat(remote, custom_mode(4, 5), mavlink.MAV_STATE_ACTIVE))
    assert changes == [peer]

    peer.update(heartbeat(remote, custom_mode(4, 5), mavlink.MAV_STATE_STANDBY))
    assert hud.armed_state == "Disarmed"
    assert len(changes) == 2


def test_liveness_times_out(peer, remote, clock):
    changes = []
    peer.set_on_status_changed(changes.append)
    peer.update(heartbeat(remote))
    changes.clear()

    clock.advance(HEARTBEAT_TIMEOUT - 0.5)
    peer.check_liveness()
    assert peer.connected

    clock.advance(1.0)
    peer.check_liveness()
    assert not peer.connected
    assert changes == [peer]

    # already disconnected: no repeat notification
    clock.advance(1.0)
    peer.check_liveness()
    assert changes == [peer]

    peer.update(heartbeat(remote))
    assert peer.connected


def test_position_projection(peer, remote):
    peer.update(remote.global_position_int_encode(0, 473977418, 85455939, 488000, 5000, 0, 0, 0, 27000))

    pos = peer.telemetry.position
    assert pos.valid
    assert pos.lat == pytest.approx(47.3977418)
    assert pos.lon == pytest.approx(8.5455939)
    assert pos.alt == pytest.approx(488.0)
    assert peer.telemetry.hud.hdg == pytest.approx(270.0)


def test_hud_and_attitude_projection(peer, remote):
    peer.update(remote.vfr_hud_encode(10.0, 5.0, 90, 50, 100.0, 0.0))
    peer.update(remote.attitude_encode(0, math.pi / 6, -math.pi / 4, math.pi / 2, 0.0, 0.0, 0.0))

    hud = peer.telemetry.hud
    assert hud.airspeed == pytest.approx(36.0)
    assert hud.groundspeed == pytest.approx(18.0)
    assert hud.roll == pytest.approx(30.0)
    assert hud.pitch == pytest.approx(-45.0)
    assert hud.hdg == pytest.approx(90.0)


def test_landed_and_safety_labels(peer, remote):
    changes = []
    peer.set_on_status_changed(changes.append)

    peer.update(remote.extended_sys_state_encode(0, mavlink.MAV_LANDED_STATE_IN_AIR))
    assert peer.telemetry.hud.landed_state == "On route"
    peer.update(remote.extended_sys_state_encode(0, mavlink.MAV_LANDED_STATE_LANDING))
    assert peer.telemetry.hud.landed_state == "Landing"
    peer.update(remote.extended_sys_state_encode(0, mavlink.MAV_LANDED_STATE_ON_GROUND))
    assert peer.telemetry.hud.landed_state == "On ground"
    assert len(changes) == 3

    peer.update(FakeMessage("EXTENDED_HUD", safety_state=0x02))
    assert peer.telemetry.hud.safety_state == "Enabled"
    peer.update(FakeMessage("EXTENDED_HUD", safety_state=0x01))
    assert peer.telemetry.hud.safety_state == "Disabled"
    assert len(changes) == 5


def test_latest_and_message_callback(peer, remote, clock):
    seen = []
    peer.set_on_message(lambda p, m: seen.append((p.peer_id, m.get_type())))

    msg = remote.vfr_hud_encode(1.0, 1.0, 0, 0, 0.0, 0.0)
    clock.advance(3.0)
    peer.update(msg)

    assert peer.latest("VFR_HUD") is msg
    assert peer.latest("ATTITUDE") is None
    assert peer.last_update == clock.now
    assert seen == [(1, "VFR_HUD")]


def test_log_fetcher_is_created_once_and_fed(peer, remote, sent, tmp_path):
    assert peer.log_fetcher is None

    fetcher = peer.get_log_fetcher(str(tmp_path), request_timeout=0.2)
    assert peer.get_log_fetcher(str(tmp_path)) is fetcher

    fetcher.start()
    assert sent.last.get_type() == "LOG_REQUEST_LIST"

    peer.update(log_entry(remote, 0, 1, 1600000000, 1000))
    assert fetcher.get_phase() == FetchPhase.STANDBY
    assert [e.size for e in fetcher.catalog.entries] == [1000]


def test_send_message_goes_through_registry_sender(peer, sent, codec):
    msg = codec.log_request_list(1, 1, 0, 0)
    peer.send_message(msg)
    assert sent.messages == [msg]
