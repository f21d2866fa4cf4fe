import socket
from dataclasses import replace

import pytest

from memifkit.connection import MemifConnection
from memifkit.echo_client import handle_packets, main, make_reply, transmit
from memifkit.layout import MemifArgs, create_region
from memifkit.messages import RingType
from memifkit.packets import (
    ARP_REPLY,
    BROADCAST_MAC,
    Arp,
    Ethernet,
    Geneve,
    IcmpEcho,
    IPv4,
    PacketError,
    Raw,
    Udp,
    decode_frame,
)

MAC = "01:02:03:04:05:06"
PEER = "02:00:00:00:00:0a"


@pytest.fixture
def conn():
    args = MemifArgs(log2_ring_size=4)
    left, right = socket.socketpair()
    regions = [create_region(args, False), create_region(args, True)]
    connection = MemifConnection(left, args, regions)
    yield connection
    connection.close()
    right.close()


def _inject(conn, packet):
    conn.refill_queue(0)
    ring = conn.ring(RingType.M2S, 0)
    slot = ring.tail & ring.mask
    desc = ring.get_descriptor(slot)
    conn.buffer_view(ring.offset, slot)[:len(packet)] = packet
    ring.set_descriptor(slot, replace(desc, length=len(packet)))
    ring.tail = ring.tail + 1


def _sent(conn, slot=0):
    ring = conn.ring(RingType.S2M, 0)
    desc = ring.get_descriptor(slot)
    return bytes(conn.buffer_view(ring.offset, slot)[:desc.length])


def _echo_request_bytes():
    return (
        Ethernet(dst=MAC, src=PEER)
        / IPv4(src="192.0.2.2", dst="192.0.2.1")
        / IcmpEcho(identifier=7, sequence=3)
        / Raw(b"ping")
    ).encode()


def test_arp_request_gets_reply():
    request = decode_frame(
        (
            Ethernet(dst=BROADCAST_MAC, src=PEER)
            / Arp(hwsrc=PEER, psrc="192.0.2.2", pdst="192.0.2.1")
        ).encode()
    )
    reply = make_reply(request, MAC)
    arp = reply[Arp]
    assert arp.op == ARP_REPLY
    assert arp.hwsrc == MAC
    assert arp.hwdst == PEER
    assert arp.psrc == "192.0.2.1"
    assert arp.pdst == "192.0.2.2"
    assert reply[Ethernet].dst == PEER
    assert decode_frame(reply.encode())[Arp] == arp


def test_icmp_echo_reply():
    reply = decode_frame(make_reply(decode_frame(_echo_request_bytes()), MAC).encode())
    assert reply[Ethernet].src == MAC
    assert reply[Ethernet].dst == PEER
    assert reply[IPv4].src == "192.0.2.1"
    assert reply[IPv4].dst == "192.0.2.2"
    echo = reply[IcmpEcho]
    assert echo.is_reply
    assert (echo.identifier, echo.sequence) == (7, 3)
    assert reply[Raw].data == b"ping"
    assert Geneve not in reply


def test_geneve_echo_reply_is_encapsulated():
    request = (
        Ethernet(dst=MAC, src=PEER)
        / IPv4(src="198.51.100.2", dst="192.0.2.2")
        / Udp(sport=6081, dport=6081)
        / Geneve(vni=7)
        / IPv4(src="192.168.0.2", dst="192.168.0.1")
        / IcmpEcho(identifier=5, sequence=9)
        / Raw(b"payload")
    )
    reply = decode_frame(make_reply(decode_frame(request.encode()), MAC).encode())
    assert reply[Geneve].vni == 42
    addresses = [(layer.src, layer.dst) for layer in reply if isinstance(layer, IPv4)]
    assert addresses == [("192.0.2.2", "198.51.100.2")] * 2
    echo = reply[IcmpEcho]
    assert echo.is_reply
    assert (echo.identifier, echo.sequence) == (5, 9)
    assert reply[Raw].data == b"payload"


def test_geneve_without_echo_request_is_an_error():
    request = (
        Ethernet(dst=MAC, src=PEER)
        / IPv4(src="198.51.100.2", dst="192.0.2.2")
        / Udp(sport=6081, dport=6081)
        / Geneve()
        / IPv4(src="192.168.0.2", dst="192.168.0.1")
        / Udp(sport=1000, dport=2000)
        / Raw(b"x")
    )
    with pytest.raises(PacketError):
        make_reply(decode_frame(request.encode()), MAC)


def test_unrelated_packets_get_no_reply():
    udp = Ethernet(dst=MAC, src=PEER) / IPv4(src="192.0.2.2", dst="192.0.2.1") / Udp(
        sport=1000, dport=2000
    ) / Raw(b"x")
    echo_reply = Ethernet(dst=MAC, src=PEER) / IPv4(src="192.0.2.2", dst="192.0.2.1") / IcmpEcho(
        icmp_type=0
    )
    assert make_reply(decode_frame(udp.encode()), MAC) is None
    assert make_reply(decode_frame(echo_reply.encode()), MAC) is None


def test_transmit_writes_to_tx_ring(conn):
    assert transmit(conn, b"hello") == 1
    ring = conn.ring(RingType.S2M, 0)
    assert ring.head == 1
    assert ring.get_descriptor(0).length == 5
    assert _sent(conn) == b"hello"


def test_transmit_rejects_oversized_packet(conn):
    with pytest.raises(ValueError):
        transmit(conn, b"\0" * (conn.args.buffer_size + 1))
    assert conn.ring(RingType.S2M, 0).head == 0


def test_handle_packets_answers_echo(conn):
    _inject(conn, _echo_request_bytes())
    assert handle_packets(conn, MAC) == 1
    reply = decode_frame(_sent(conn))
    assert reply[IcmpEcho].is_reply
    assert reply[Raw].data == b"ping"
    assert handle_packets(conn, MAC) == 0


def test_handle_packets_reports_unknown(conn, capsys):
    packet = (
        Ethernet(dst=MAC, src=PEER)
        / IPv4(src="192.0.2.2", dst="192.0.2.1")
        / Udp(sport=1000, dport=2000)
        / Raw(b"x")
    ).encode()
    _inject(conn, packet)
    assert handle_packets(conn, MAC) == 0
    assert "Unknown" in capsys.readouterr().out
    assert conn.ring(RingType.S2M, 0).head == 0


def test_main_fails_without_socket(tmp_path):
    with pytest.raises(OSError):
        main(["--socket", str(tmp_path / "missing.sock")])