"""Answer ARP, ICMP echo and GENEVE-encapsulated echo requests on a memif link."""

from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence, Type, TypeVar

from .connection import MemifConnection, connect
from .packets import (
    ARP_REPLY,
    ICMP_ECHO_REPLY,
    Arp,
    Ethernet,
    Frame,
    Geneve,
    IcmpEcho,
    IPv4,
    PacketError,
    Raw,
    Udp,
    decode_frame,
)

log = logging.getLogger(__name__)

DEFAULT_SOCKET = "/run/vpp/memif.sock"
DEFAULT_MAC = "01:02:03:04:05:06"
DEFAULT_BURST = 32
GENEVE_REPLY_VNI = 42
TX_BUFFER_SIZE = 2048
REFILL_ALL = 0xFFFF

T = TypeVar("T")


def _require(frame: Frame, layer_type: Type[T]) -> T:
    layer = frame.get(layer_type)
    if layer is None:
        raise PacketError(f"packet has no {layer_type.__name__} layer")
    return layer


def _echo_request(frame: Frame) -> Optional[IcmpEcho]:
    return next(
        (layer for layer in frame if isinstance(layer, IcmpEcho) and layer.is_request),
        None,
    )


def _echo_reply(frame: Frame, mac: str, encapsulate: bool) -> Frame:
    ether = _require(frame, Ethernet)
    ip = _require(frame, IPv4)
    echo = _echo_request(frame)
    if echo is None:
        raise PacketError("packet has no ICMP echo request")
    raw = frame.get(Raw)
    data = raw.data if raw is not None else b""

    reply = Ethernet(src=mac, dst=ether.src) / IPv4(src=ip.dst, dst=ip.src)
    if encapsulate:
        reply = (
            reply
            / Udp()
            / Geneve(vni=GENEVE_REPLY_VNI)
            / IPv4(src=ip.dst, dst=ip.src)
        )
    return (
        reply
        / IcmpEcho(
            icmp_type=ICMP_ECHO_REPLY,
            identifier=echo.identifier,
            sequence=echo.sequence,
        )
        / Raw(data)
    )


def make_reply(frame: Frame, mac: str = DEFAULT_MAC) -> Optional[Frame]:
    """Build the answer to an ARP, GENEVE or echo request; None for anything else."""
    arp = frame.get(Arp)
    if arp is not None:
        ether = _require(frame, Ethernet)
        return Ethernet(src=mac, dst=ether.src) / Arp(
            op=ARP_REPLY,
            hwdst=arp.hwsrc,
            pdst=arp.psrc,
            hwsrc=mac,
            psrc=arp.pdst,
        )
    if Geneve in frame:
        return _echo_reply(frame, mac, encapsulate=True)
    if _echo_request(frame) is not None:
        return _echo_reply(frame, mac, encapsulate=False)
    return None


def transmit(conn: MemifConnection, data: bytes) -> int:
    """Send one packet on queue 0; returns how many buffers went out (0 if full)."""
    data = bytes(data)
    if len(data) > conn.args.buffer_size:
        raise ValueError(
            f"packet of {len(data)} bytes exceeds buffer size {conn.args.buffer_size}"
        )
    bufs = conn.buffer_alloc(0, 1, TX_BUFFER_SIZE)
    if not bufs:
        log.debug("no transmit buffer available")
        return 0
    first = bufs[0]
    first.data[:len(data)] = data
    first.length = len(data)
    return conn.tx_burst(0, bufs)


def handle_packets(
    conn: MemifConnection, mac: str = DEFAULT_MAC, burst: int = DEFAULT_BURST
) -> int:
    """Refill, receive one burst and answer it; returns the number of replies sent."""
    conn.refill_queue(0, REFILL_ALL, 0)
    replies = 0
    for buf in conn.rx_burst(0, burst):
        frame = decode_frame(bytes(buf.data[:buf.length]))
        reply = make_reply(frame, mac)
        if reply is None:
            print("Unknown")
            continue
        replies += transmit(conn, reply.encode())
    return replies


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="memif-echo-client",
        description="Answer ARP and ICMP echo requests arriving on a memif interface.",
    )
    parser.add_argument("--socket", default=DEFAULT_SOCKET, help="memif control socket")
    parser.add_argument("--id", type=int, default=0, help="memif interface id")
    parser.add_argument("--mac", default=DEFAULT_MAC, help="MAC address to answer with")
    parser.add_argument("--burst", type=int, default=DEFAULT_BURST, help="receive burst size")
    args = parser.parse_args(argv)

    with connect(args.socket, args.id) as conn:
        try:
            while True:
                handle_packets(conn, args.mac, args.burst)
        except KeyboardInterrupt:
            pass
    return 0