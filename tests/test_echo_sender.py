import pytest

from memifkit.echo_client import make_reply
from memifkit.echo_sender import RateCounter, SerializableInstant, build_request, main
from memifkit.packets import BROADCAST_MAC, Ethernet, Geneve, IcmpEcho, IPv4, Raw, Udp, decode_frame

MAC = "01:02:03:04:05:06"


def test_instant_wire_format():
    data = SerializableInstant(seconds=1, nanos=2).to_bytes()
    assert data == bytes([1, 0, 0, 0, 0, 0, 0, 0, 2, 0, 0, 0])


def test_instant_round_trip():
    instant = SerializableInstant(seconds=123456, nanos=999_999_999)
    assert SerializableInstant.from_bytes(instant.to_bytes()) == instant


def test_instant_from_short_data_fails():
    with pytest.raises(ValueError):
        SerializableInstant.from_bytes(b"\0" * 5)


def test_instant_rejects_invalid_nanos():
    with pytest.raises(ValueError):
        SerializableInstant.from_bytes(b"\0" * 8 + b"\xff\xff\xff\xff")


def test_now_is_monotonic_and_elapsed_non_negative():
    first = SerializableInstant.now()
    second = SerializableInstant.now()
    assert second.duration_ns >= first.duration_ns
    assert first.elapsed() >= 0


def test_rate_counter_reports_after_interval():
    times = iter([0.0, 0.5, 1.5, 1.6])
    counter = RateCounter(interval=1.0, clock=lambda: next(times))
    for _ in range(3):
        counter.sent()
    assert counter.received() is None
    assert counter.received() == 3
    assert counter.count == 0
    assert counter.received() is None


def test_build_request_layers():
    frame = decode_frame(build_request(MAC, b"stamp").encode())
    assert frame[Ethernet].src == MAC
    assert frame[Ethernet].dst == BROADCAST_MAC
    assert (frame[Udp].sport, frame[Udp].dport) == (6081, 6081)
    assert frame[Geneve].vni == 42
    addresses = [(layer.src, layer.dst) for layer in frame if isinstance(layer, IPv4)]
    assert addresses == [("198.51.100.2", "192.0.2.2"), ("192.168.0.2", "192.168.0.1")]
    assert frame[IcmpEcho].is_request
    assert frame[Raw].data == b"stamp"


def test_reply_carries_instant_back():
    instant = SerializableInstant.now()
    request = decode_frame(build_request(MAC, instant.to_bytes()).encode())
    reply = decode_frame(make_reply(request, MAC).encode())
    assert reply[IcmpEcho].is_reply
    assert SerializableInstant.from_bytes(reply[Raw].data) == instant


def test_main_fails_without_socket(tmp_path):
    with pytest.raises(OSError):
        main(["--socket", str(tmp_path / "missing.sock")])