"""Ethernet, ARP, IPv4, UDP, GENEVE and ICMP echo packets.

Layers are stacked with ``/`` into a :class:`Frame`.  Fields left as ``None``
(lengths, checksums, protocol numbers) are filled in when the frame is
encoded.  Decoding fills every field, so a decoded frame encodes back to the
same bytes.
"""

from __future__ import annotations

import ipaddress
import string
import struct
from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional, Type, TypeVar

ETHERTYPE_IPV4 = 0x0800
ETHERTYPE_ARP = 0x0806
ETHERTYPE_TEB = 0x6558
IP_PROTO_ICMP = 1
IP_PROTO_UDP = 17
GENEVE_PORT = 6081
ICMP_ECHO_REPLY = 0
ICMP_ECHO_REQUEST = 8
ARP_REQUEST = 1
ARP_REPLY = 2

BROADCAST_MAC = "ff:ff:ff:ff:ff:ff"
ZERO_MAC = "00:00:00:00:00:00"
ZERO_IP = "0.0.0.0"

_ETHERNET = struct.Struct("!6s6sH")
_ARP = struct.Struct("!HHBBH6s4s6s4s")
_IPV4 = struct.Struct("!BBHHHBBH4s4s")
_UDP = struct.Struct("!HHHH")
_GENEVE = struct.Struct("!BBHI")
_ICMP_ECHO = struct.Struct("!BBHHH")

T = TypeVar("T")


class PacketError(ValueError):
    """Raised when a packet cannot be built, encoded or decoded."""


def _mac_bytes(mac: str) -> bytes:
    parts = mac.split(":") if isinstance(mac, str) else []
    if len(parts) != 6 or not all(
        1 <= len(part) <= 2 and all(ch in string.hexdigits for ch in part) for part in parts
    ):
        raise PacketError(f"invalid MAC address: {mac!r}")
    return bytes(int(part, 16) for part in parts)


def _mac_str(data: bytes) -> str:
    return ":".join(f"{octet:02x}" for octet in data)


def _ip_bytes(addr: str) -> bytes:
    try:
        return ipaddress.IPv4Address(addr).packed
    except ValueError as exc:
        raise PacketError(f"invalid IPv4 address: {addr!r}") from exc


def _ip_str(data: bytes) -> str:
    return str(ipaddress.IPv4Address(data))


def _checksum(data: bytes) -> int:
    if len(data) % 2:
        data += b"\0"
    total = sum(struct.unpack(f"!{len(data) // 2}H", data))
    while total > 0xFFFF:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def _pad4(data: bytes) -> bytes:
    return data + b"\0" * (-len(data) % 4)


class _Layer:
    """Common behaviour of all layers: stacking with ``/``."""

    def __truediv__(self, other):
        return Frame([self]) / other


@dataclass(frozen=True)
class Ethernet(_Layer):
    dst: str = BROADCAST_MAC
    src: str = ZERO_MAC
    ethertype: Optional[int] = None

    def __post_init__(self) -> None:
        _mac_bytes(self.dst)
        _mac_bytes(self.src)

    def _encode(self, payload: bytes, inner, outer) -> bytes:
        ethertype = self.ethertype
        if ethertype is None:
            ethertype = _ETHERTYPES.get(type(inner), ETHERTYPE_IPV4)
        return _ETHERNET.pack(_mac_bytes(self.dst), _mac_bytes(self.src), ethertype) + payload


@dataclass(frozen=True)
class Arp(_Layer):
    hwtype: int = 1
    ptype: int = ETHERTYPE_IPV4
    op: int = ARP_REQUEST
    hwsrc: str = ZERO_MAC
    psrc: str = ZERO_IP
    hwdst: str = ZERO_MAC
    pdst: str = ZERO_IP

    def __post_init__(self) -> None:
        _mac_bytes(self.hwsrc)
        _mac_bytes(self.hwdst)
        _ip_bytes(self.psrc)
        _ip_bytes(self.pdst)

    def _encode(self, payload: bytes, inner, outer) -> bytes:
        return _ARP.pack(
            self.hwtype,
            self.ptype,
            6,
            4,
            self.op,
            _mac_bytes(self.hwsrc),
            _ip_bytes(self.psrc),
            _mac_bytes(self.hwdst),
            _ip_bytes(self.pdst),
        ) + payload


@dataclass(frozen=True)
class IPv4(_Layer):
    src: str = ZERO_IP
    dst: str = ZERO_IP
    tos: int = 0
    identification: int = 0
    flags: int = 0
    fragment_offset: int = 0
    ttl: int = 64
    protocol: Optional[int] = None
    total_length: Optional[int] = None
    checksum: Optional[int] = None
    ihl: Optional[int] = None
    options: bytes = b""
    version: int = 4

    def __post_init__(self) -> None:
        _ip_bytes(self.src)
        _ip_bytes(self.dst)

    def _encode(self, payload: bytes, inner, outer) -> bytes:
        options = _pad4(bytes(self.options))
        ihl = self.ihl if self.ihl is not None else 5 + len(options) // 4
        if (ihl - 5) * 4 != len(options) or ihl > 15:
            raise PacketError(f"IPv4 header length {ihl} does not match options")
        header_len = ihl * 4
        total = self.total_length if self.total_length is not None else header_len + len(payload)
        protocol = self.protocol
        if protocol is None:
            protocol = _IP_PROTOCOLS.get(type(inner), 0)
        header = _IPV4.pack(
            (self.version << 4) | ihl,
            self.tos,
            total,
            self.identification,
            (self.flags << 13) | self.fragment_offset,
            self.ttl,
            protocol,
            0,
            _ip_bytes(self.src),
            _ip_bytes(self.dst),
        ) + options
        checksum = self.checksum if self.checksum is not None else _checksum(header)
        return header[:10] + struct.pack("!H", checksum) + header[12:] + payload


@dataclass(frozen=True)
class Udp(_Layer):
    sport: Optional[int] = None
    dport: Optional[int] = None
    length: Optional[int] = None
    checksum: Optional[int] = None

    def _encode(self, payload: bytes, inner, outer) -> bytes:
        default_port = GENEVE_PORT if isinstance(inner, Geneve) else 0
        sport = self.sport if self.sport is not None else default_port
        dport = self.dport if self.dport is not None else default_port
        length = self.length if self.length is not None else _UDP.size + len(payload)
        checksum = self.checksum
        if checksum is None:
            checksum = 0
            if isinstance(outer, IPv4):
                pseudo = (
                    _ip_bytes(outer.src)
                    + _ip_bytes(outer.dst)
                    + struct.pack("!BBH", 0, IP_PROTO_UDP, length)
                )
                checksum = _checksum(pseudo + _UDP.pack(sport, dport, length, 0) + payload)
                if checksum == 0:
                    checksum = 0xFFFF
        return _UDP.pack(sport, dport, length, checksum) + payload


@dataclass(frozen=True)
class Geneve(_Layer):
    vni: int = 0
    protocol: Optional[int] = None
    oam: bool = False
    critical: bool = False
    options: bytes = b""
    version: int = 0

    def _encode(self, payload: bytes, inner, outer) -> bytes:
        if not 0 <= self.vni <= 0xFFFFFF:
            raise PacketError(f"GENEVE VNI {self.vni} out of range")
        options = _pad4(bytes(self.options))
        opt_len = len(options) // 4
        if opt_len > 0x3F:
            raise PacketError("GENEVE options too long")
        protocol = self.protocol
        if protocol is None:
            protocol = _GENEVE_PROTOCOLS.get(type(inner), 0)
        return _GENEVE.pack(
            (self.version << 6) | opt_len,
            (int(self.oam) << 7) | (int(self.critical) << 6),
            protocol,
            self.vni << 8,
        ) + options + payload


@dataclass(frozen=True)
class IcmpEcho(_Layer):
    """ICMP echo request or reply; the payload follows as a Raw layer."""

    icmp_type: int = ICMP_ECHO_REQUEST
    code: int = 0
    identifier: int = 0
    sequence: int = 0
    checksum: Optional[int] = None

    @property
    def is_request(self) -> bool:
        return self.icmp_type == ICMP_ECHO_REQUEST

    @property
    def is_reply(self) -> bool:
        return self.icmp_type == ICMP_ECHO_REPLY

    def _encode(self, payload: bytes, inner, outer) -> bytes:
        header = _ICMP_ECHO.pack(self.icmp_type, self.code, 0, self.identifier, self.sequence)
        checksum = self.checksum if self.checksum is not None else _checksum(header + payload)
        return header[:2] + struct.pack("!H", checksum) + header[4:] + payload


@dataclass(frozen=True)
class Raw(_Layer):
    data: bytes = b""

    def _encode(self, payload: bytes, inner, outer) -> bytes:
        return bytes(self.data) + payload


_ETHERTYPES = {IPv4: ETHERTYPE_IPV4, Arp: ETHERTYPE_ARP}
_IP_PROTOCOLS = {Udp: IP_PROTO_UDP, IcmpEcho: IP_PROTO_ICMP}
_GENEVE_PROTOCOLS = {IPv4: ETHERTYPE_IPV4, Ethernet: ETHERTYPE_TEB}


@dataclass
class Frame:
    """An ordered stack of layers, outermost first."""

    layers: List[_Layer] = field(default_factory=list)

    def __truediv__(self, other):
        if isinstance(other, Frame):
            return Frame([*self.layers, *other.layers])
        if isinstance(other, _Layer):
            return Frame([*self.layers, other])
        return NotImplemented

    def get(self, layer_type: Type[T]) -> Optional[T]:
        """The outermost layer of the given type, or None."""
        return next((layer for layer in self.layers if isinstance(layer, layer_type)), None)

    def __getitem__(self, layer_type: Type[T]) -> T:
        found = self.get(layer_type)
        if found is None:
            raise KeyError(layer_type.__name__)
        return found

    def __contains__(self, layer_type) -> bool:
        return self.get(layer_type) is not None

    def __iter__(self) -> Iterator[_Layer]:
        return iter(self.layers)

    def __len__(self) -> int:
        return len(self.layers)

    def encode(self) -> bytes:
        return encode_layers(self.layers)


def encode_layers(layers: Iterable[_Layer]) -> bytes:
    """Encode a stack of layers, outermost first, into wire bytes."""
    stack = list(layers)
    for layer in stack:
        if not isinstance(layer, _Layer):
            raise PacketError(f"not a packet layer: {layer!r}")
    outers = [None, *stack[:-1]]
    inners = [*stack[1:], None]
    payload = b""
    try:
        for layer, outer, inner in reversed(list(zip(stack, outers, inners))):
            payload = layer._encode(payload, inner, outer)
    except struct.error as exc:
        raise PacketError(str(exc)) from exc
    return payload


def _need(data: bytes, size: int, what: str) -> None:
    if len(data) < size:
        raise PacketError(f"truncated {what}: need {size} bytes, got {len(data)}")


def _decode_raw(data: bytes, layers: List[_Layer]) -> None:
    if data:
        layers.append(Raw(data))


def _decode_ethernet(data: bytes, layers: List[_Layer]) -> None:
    _need(data, _ETHERNET.size, "Ethernet header")
    dst, src, ethertype = _ETHERNET.unpack_from(data)
    layers.append(Ethernet(dst=_mac_str(dst), src=_mac_str(src), ethertype=ethertype))
    rest = data[_ETHERNET.size:]
    if ethertype == ETHERTYPE_ARP:
        _decode_arp(rest, layers)
    elif ethertype == ETHERTYPE_IPV4:
        _decode_ipv4(rest, layers)
    else:
        _decode_raw(rest, layers)


def _decode_arp(data: bytes, layers: List[_Layer]) -> None:
    _need(data, 8, "ARP header")
    hwlen, plen = data[4], data[5]
    if (hwlen, plen) != (6, 4):
        raise PacketError(f"unsupported ARP address sizes {hwlen}/{plen}")
    _need(data, _ARP.size, "ARP packet")
    hwtype, ptype, _, _, op, hwsrc, psrc, hwdst, pdst = _ARP.unpack_from(data)
    layers.append(
        Arp(
            hwtype=hwtype,
            ptype=ptype,
            op=op,
            hwsrc=_mac_str(hwsrc),
            psrc=_ip_str(psrc),
            hwdst=_mac_str(hwdst),
            pdst=_ip_str(pdst),
        )
    )


def _decode_ipv4(data: bytes, layers: List[_Layer]) -> None:
    _need(data, _IPV4.size, "IPv4 header")
    (vihl, tos, total, ident, flags_frag, ttl, proto,
     checksum, src, dst) = _IPV4.unpack_from(data)
    version, ihl = vihl >> 4, vihl & 0x0F
    if version != 4:
        raise PacketError(f"not an IPv4 packet (version {version})")
    if ihl < 5:
        raise PacketError(f"invalid IPv4 header length {ihl}")
    header_len = ihl * 4
    if total < header_len or total > len(data):
        raise PacketError(f"invalid IPv4 total length {total}")
    flags, frag = flags_frag >> 13, flags_frag & 0x1FFF
    layers.append(
        IPv4(
            src=_ip_str(src),
            dst=_ip_str(dst),
            tos=tos,
            identification=ident,
            flags=flags,
            fragment_offset=frag,
            ttl=ttl,
            protocol=proto,
            total_length=total,
            checksum=checksum,
            ihl=ihl,
            options=data[_IPV4.size:header_len],
            version=version,
        )
    )
    payload = data[header_len:total]
    if frag or flags & 1:
        _decode_raw(payload, layers)
    elif proto == IP_PROTO_UDP:
        _decode_udp(payload, layers)
    elif proto == IP_PROTO_ICMP:
        _decode_icmp(payload, layers)
    else:
        _decode_raw(payload, layers)


def _decode_udp(data: bytes, layers: List[_Layer]) -> None:
    _need(data, _UDP.size, "UDP header")
    sport, dport, length, checksum = _UDP.unpack_from(data)
    if length < _UDP.size or length > len(data):
        raise PacketError(f"invalid UDP length {length}")
    layers.append(Udp(sport=sport, dport=dport, length=length, checksum=checksum))
    payload = data[_UDP.size:length]
    if dport == GENEVE_PORT:
        _decode_geneve(payload, layers)
    else:
        _decode_raw(payload, layers)


def _decode_geneve(data: bytes, layers: List[_Layer]) -> None:
    _need(data, _GENEVE.size, "GENEVE header")
    ver_opt, flag_bits, protocol, vni_word = _GENEVE.unpack_from(data)
    header_len = _GENEVE.size + (ver_opt & 0x3F) * 4
    _need(data, header_len, "GENEVE options")
    layers.append(
        Geneve(
            vni=vni_word >> 8,
            protocol=protocol,
            oam=bool(flag_bits & 0x80),
            critical=bool(flag_bits & 0x40),
            options=data[_GENEVE.size:header_len],
            version=ver_opt >> 6,
        )
    )
    payload = data[header_len:]
    if protocol == ETHERTYPE_IPV4:
        _decode_ipv4(payload, layers)
    elif protocol == ETHERTYPE_TEB:
        _decode_ethernet(payload, layers)
    else:
        _decode_raw(payload, layers)


def _decode_icmp(data: bytes, layers: List[_Layer]) -> None:
    _need(data, 4, "ICMP header")
    if data[0] not in (ICMP_ECHO_REQUEST, ICMP_ECHO_REPLY):
        _decode_raw(data, layers)
        return
    _need(data, _ICMP_ECHO.size, "ICMP echo header")
    icmp_type, code, checksum, identifier, sequence = _ICMP_ECHO.unpack_from(data)
    layers.append(
        IcmpEcho(
            icmp_type=icmp_type,
            code=code,
            identifier=identifier,
            sequence=sequence,
            checksum=checksum,
        )
    )
    _decode_raw(data[_ICMP_ECHO.size:], layers)


def decode_frame(data: bytes) -> Frame:
    """Decode an Ethernet frame into its layers."""
    layers: List[_Layer] = []
    _decode_ethernet(bytes(data), layers)
    return Frame(layers)