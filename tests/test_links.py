import pytest

from link_config import LinkConfig
from link_factory import build_link
from serial_link import SerialLink, SerialLinkError
from tcp_link import TcpLink
from udp_link import UdpLink


def ignore(_data):
    pass


@pytest.mark.parametrize("link_type, cls", [
    ("tcp", TcpLink),
    ("udp", UdpLink),
    ("serial", SerialLink),
    ("UDP", UdpLink),
])
def test_build_link_picks_implementation(link_type, cls):
    assert isinstance(build_link(LinkConfig(link_type=link_type), ignore), cls)


def test_build_link_rejects_unknown_type():
    with pytest.raises(ValueError):
        build_link(LinkConfig(link_type="can"), ignore)


@pytest.mark.parametrize("link_type", ["tcp", "udp", "serial"])
def test_metrics_before_start(link_type):
    link = build_link(LinkConfig(link_type=link_type), ignore)
    metrics = link.get_metrics()

    assert metrics["link_type"] == link_type
    assert metrics["running"] is False
    assert metrics["connected"] is False
    assert metrics["tx_bytes"] == 0


@pytest.mark.parametrize("link_type", ["tcp", "udp", "serial"])
def test_send_before_start_is_dropped(link_type):
    link = build_link(LinkConfig(link_type=link_type), ignore)
    link.send(b"\xfd\x00")
    link.stop()
    assert link.get_metrics()["tx_dropped_queue_full"] == 0


def test_send_rejects_non_bytes():
    link = TcpLink(LinkConfig(), ignore)
    link._running.set()
    with pytest.raises(TypeError):
        link.send("text")


def test_tcp_send_drops_when_queue_full():
    link = TcpLink(LinkConfig(tx_queue_size=1), ignore)
    link._running.set()
    link.send(b"a")
    link.send(b"b")
    assert link.get_metrics()["tx_dropped_queue_full"] == 1


def test_udp_configured_remote():
    link = UdpLink(LinkConfig(link_type="udp", remote_host="10.0.0.2", remote_port=14580), ignore)
    assert link.remote == ("10.0.0.2", 14580)
    assert link.is_connected()

    assert UdpLink(LinkConfig(link_type="udp"), ignore).remote is None


def test_udp_learns_remote_from_first_datagram():
    link = UdpLink(LinkConfig(link_type="udp"), ignore)
    link._learn_remote(("192.168.1.20", 14580))
    assert link.remote == ("192.168.1.20", 14580)
    assert link.get_metrics()["connected"] is True


def test_serial_rejects_bad_baudrate():
    with pytest.raises(SerialLinkError):
        SerialLink(LinkConfig(link_type="serial", baudrate=0), ignore)
