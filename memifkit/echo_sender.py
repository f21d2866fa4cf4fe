"""Send timestamped GENEVE echo requests over memif and report the reply rate."""

from __future__ import annotations

import argparse
import logging
import struct
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .connection import MemifConnection, connect
from .echo_client import DEFAULT_BURST, DEFAULT_MAC, DEFAULT_SOCKET, make_reply, transmit
from .packets import (
    BROADCAST_MAC,
    GENEVE_PORT,
    Arp,
    Ethernet,
    Frame,
    Geneve,
    IcmpEcho,
    IPv4,
    Raw,
    Udp,
    decode_frame,
)

log = logging.getLogger(__name__)

DEFAULT_INTERFACE_ID = 1
REQUEST_VNI = 42
OUTER_SRC = "198.51.100.2"
OUTER_DST = "192.0.2.2"
INNER_SRC = "192.168.0.2"
INNER_DST = "192.168.0.1"
REFILL_ALL = 0xFFFF

_NS_PER_SECOND = 1_000_000_000
_WIRE = struct.Struct("<QI")
_EPOCH_NS = time.monotonic_ns()


@dataclass(frozen=True)
class SerializableInstant:
    """A monotonic instant stored as the time since this process's epoch."""

    seconds: int = 0
    nanos: int = 0

    def __post_init__(self) -> None:
        if self.seconds < 0 or not 0 <= self.nanos < _NS_PER_SECOND:
            raise ValueError(f"invalid duration {self.seconds}s {self.nanos}ns")

    @property
    def duration_ns(self) -> int:
        return self.seconds * _NS_PER_SECOND + self.nanos

    @classmethod
    def now(cls) -> "SerializableInstant":
        seconds, nanos = divmod(time.monotonic_ns() - _EPOCH_NS, _NS_PER_SECOND)
        return cls(seconds=seconds, nanos=nanos)

    def to_bytes(self) -> bytes:
        return _WIRE.pack(self.seconds, self.nanos)

    @classmethod
    def from_bytes(cls, data: bytes) -> "SerializableInstant":
        if len(data) < _WIRE.size:
            raise ValueError(f"instant needs {_WIRE.size} bytes, got {len(data)}")
        seconds, nanos = _WIRE.unpack_from(bytes(data))
        return cls(seconds=seconds, nanos=nanos)

    def elapsed(self) -> float:
        """Seconds passed since this instant."""
        return (time.monotonic_ns() - _EPOCH_NS - self.duration_ns) / _NS_PER_SECOND


class RateCounter:
    """Counts sent packets and reports the count at most once per interval."""

    def __init__(self, interval: float = 1.0, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.clock = clock
        self.count = 0
        self._last = clock()

    def sent(self) -> None:
        self.count += 1

    def received(self) -> Optional[int]:
        """On a reply: the count since the last report if the interval passed, else None."""
        now = self.clock()
        if now - self._last <= self.interval:
            return None
        self._last = now
        count, self.count = self.count, 0
        return count


def build_request(mac: str, payload: bytes) -> Frame:
    """A GENEVE-encapsulated ICMP echo request carrying ``payload``."""
    return (
        Ethernet(src=mac, dst=BROADCAST_MAC)
        / IPv4(dst=OUTER_DST, src=OUTER_SRC)
        / Udp(sport=GENEVE_PORT, dport=GENEVE_PORT)
        / Geneve(vni=REQUEST_VNI)
        / IPv4(dst=INNER_DST, src=INNER_SRC)
        / IcmpEcho(identifier=0, sequence=0)
        / Raw(bytes(payload))
    )


def _handle(conn: MemifConnection, mac: str, counter: RateCounter, frame: Frame) -> None:
    if Arp in frame:
        print("ARP request!")
        reply = make_reply(frame, mac)
        print(f"ARP Reply: {reply!r}")
        transmit(conn, reply.encode())
        return
    echo = frame.get(IcmpEcho)
    raw = frame.get(Raw)
    if echo is None or not echo.is_reply or raw is None:
        return
    instant = SerializableInstant.from_bytes(raw.data)
    log.debug("round trip: %.6fs", instant.elapsed())
    report = counter.received()
    if report is not None:
        print(f"Packet count: {report}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="memif-echo-sender",
        description="Send GENEVE echo requests over memif and report the reply rate.",
    )
    parser.add_argument("--socket", default=DEFAULT_SOCKET, help="memif control socket")
    parser.add_argument("--id", type=int, default=DEFAULT_INTERFACE_ID, help="memif interface id")
    parser.add_argument("--mac", default=DEFAULT_MAC, help="source MAC address")
    parser.add_argument("--burst", type=int, default=DEFAULT_BURST, help="receive burst size")
    args = parser.parse_args(argv)

    counter = RateCounter()
    with connect(args.socket, args.id) as conn:
        try:
            while True:
                payload = SerializableInstant.now().to_bytes()
                data = build_request(args.mac, payload).encode()
                if transmit(conn, data) == 0:
                    time.sleep(1.0)
                    continue
                conn.refill_queue(0, REFILL_ALL, 0)
                counter.sent()
                for buf in conn.rx_burst(0, args.burst):
                    _handle(conn, args.mac, counter, decode_frame(bytes(buf.data[:buf.length])))
        except KeyboardInterrupt:
            pass
    return 0