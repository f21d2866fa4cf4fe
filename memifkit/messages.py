"""Control-channel messages exchanged over the memif socket."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Dict, Optional, Type, Union

COOKIE = 0x3E31F20
VERSION_MAJOR = 2
VERSION_MINOR = 0
VERSION = (VERSION_MAJOR << 8) | VERSION_MINOR
MESSAGE_SIZE = 128
ADD_RING_FLAG_S2M = 1 << 0

_HEADER_SIZE = 2


class MessageError(ValueError):
    """Raised when a control message cannot be encoded or decoded."""


class MsgType(IntEnum):
    NONE = 0
    ACK = 1
    HELLO = 2
    INIT = 3
    ADD_REGION = 4
    ADD_RING = 5
    CONNECT = 6
    CONNECTED = 7
    DISCONNECT = 8


class RingType(IntEnum):
    S2M = 0
    M2S = 1


class InterfaceMode(IntEnum):
    ETHERNET = 0
    IP = 1
    PUNT_INJECT = 2


@dataclass(frozen=True)
class Version:
    """Protocol version; on the wire the minor byte comes first."""

    major: int = VERSION_MAJOR
    minor: int = VERSION_MINOR

    @property
    def value(self) -> int:
        return (self.major << 8) | self.minor


def _check_fixed(value: bytes, size: int, field_name: str) -> None:
    if not isinstance(value, (bytes, bytearray)):
        raise MessageError(f"{field_name} must be bytes")
    if len(value) > size:
        raise MessageError(f"{field_name} is longer than {size} bytes")


def _strip(value: bytes) -> bytes:
    return value.rstrip(b"\0")


@dataclass(frozen=True)
class Ack:
    TYPE: ClassVar[MsgType] = MsgType.ACK

    def _pack(self) -> bytes:
        return b""

    @classmethod
    def _unpack(cls, payload: bytes) -> "Ack":
        return cls()


@dataclass(frozen=True)
class Hello:
    TYPE: ClassVar[MsgType] = MsgType.HELLO
    _FORMAT: ClassVar[struct.Struct] = struct.Struct("<32sBBBBHHHB")

    name: bytes = b""
    min_version: Version = Version()
    max_version: Version = Version()
    max_region: int = 0
    max_m2s_ring: int = 0
    max_s2m_ring: int = 0
    max_log2_ring_size: int = 0

    def __post_init__(self) -> None:
        _check_fixed(self.name, 32, "name")

    def _pack(self) -> bytes:
        return self._FORMAT.pack(
            bytes(self.name),
            self.min_version.minor,
            self.min_version.major,
            self.max_version.minor,
            self.max_version.major,
            self.max_region,
            self.max_m2s_ring,
            self.max_s2m_ring,
            self.max_log2_ring_size,
        )

    @classmethod
    def _unpack(cls, payload: bytes) -> "Hello":
        (name, min_minor, min_major, max_minor, max_major,
         max_region, max_m2s, max_s2m, max_log2) = cls._FORMAT.unpack(payload)
        return cls(
            name=_strip(name),
            min_version=Version(major=min_major, minor=min_minor),
            max_version=Version(major=max_major, minor=max_minor),
            max_region=max_region,
            max_m2s_ring=max_m2s,
            max_s2m_ring=max_s2m,
            max_log2_ring_size=max_log2,
        )


@dataclass(frozen=True)
class Init:
    TYPE: ClassVar[MsgType] = MsgType.INIT
    _FORMAT: ClassVar[struct.Struct] = struct.Struct("<BBIB24s32s")

    version: Version = Version()
    interface_id: int = 0
    mode: InterfaceMode = InterfaceMode.ETHERNET
    secret: bytes = b""
    name: bytes = b""

    def __post_init__(self) -> None:
        _check_fixed(self.secret, 24, "secret")
        _check_fixed(self.name, 32, "name")

    def _pack(self) -> bytes:
        return self._FORMAT.pack(
            self.version.minor,
            self.version.major,
            self.interface_id,
            int(self.mode),
            bytes(self.secret),
            bytes(self.name),
        )

    @classmethod
    def _unpack(cls, payload: bytes) -> "Init":
        minor, major, interface_id, mode, secret, name = cls._FORMAT.unpack(payload)
        try:
            interface_mode = InterfaceMode(mode)
        except ValueError as exc:
            raise MessageError(f"unknown interface mode {mode}") from exc
        return cls(
            version=Version(major=major, minor=minor),
            interface_id=interface_id,
            mode=interface_mode,
            secret=_strip(secret),
            name=_strip(name),
        )


@dataclass(frozen=True)
class AddRegion:
    TYPE: ClassVar[MsgType] = MsgType.ADD_REGION
    _FORMAT: ClassVar[struct.Struct] = struct.Struct("<HQ")

    index: int = 0
    size: int = 0

    def _pack(self) -> bytes:
        return self._FORMAT.pack(self.index, self.size)

    @classmethod
    def _unpack(cls, payload: bytes) -> "AddRegion":
        index, size = cls._FORMAT.unpack(payload)
        return cls(index=index, size=size)


@dataclass(frozen=True)
class AddRing:
    TYPE: ClassVar[MsgType] = MsgType.ADD_RING
    _FORMAT: ClassVar[struct.Struct] = struct.Struct("<HHHIBH")

    flags: int = 0
    index: int = 0
    region: int = 0
    offset: int = 0
    log2_ring_size: int = 0
    private_hdr_size: int = 0

    def _pack(self) -> bytes:
        return self._FORMAT.pack(
            self.flags,
            self.index,
            self.region,
            self.offset,
            self.log2_ring_size,
            self.private_hdr_size,
        )

    @classmethod
    def _unpack(cls, payload: bytes) -> "AddRing":
        return cls(*cls._FORMAT.unpack(payload))


@dataclass(frozen=True)
class Connect:
    TYPE: ClassVar[MsgType] = MsgType.CONNECT
    _FORMAT: ClassVar[struct.Struct] = struct.Struct("<32s")

    if_name: bytes = b""

    def __post_init__(self) -> None:
        _check_fixed(self.if_name, 32, "if_name")

    def _pack(self) -> bytes:
        return self._FORMAT.pack(bytes(self.if_name))

    @classmethod
    def _unpack(cls, payload: bytes) -> "Connect":
        (if_name,) = cls._FORMAT.unpack(payload)
        return cls(if_name=_strip(if_name))


@dataclass(frozen=True)
class Connected:
    TYPE: ClassVar[MsgType] = MsgType.CONNECTED
    _FORMAT: ClassVar[struct.Struct] = struct.Struct("<32s")

    if_name: bytes = b""

    def __post_init__(self) -> None:
        _check_fixed(self.if_name, 32, "if_name")

    def _pack(self) -> bytes:
        return self._FORMAT.pack(bytes(self.if_name))

    @classmethod
    def _unpack(cls, payload: bytes) -> "Connected":
        (if_name,) = cls._FORMAT.unpack(payload)
        return cls(if_name=_strip(if_name))


@dataclass(frozen=True)
class Disconnect:
    TYPE: ClassVar[MsgType] = MsgType.DISCONNECT
    _FORMAT: ClassVar[struct.Struct] = struct.Struct("<I96s")

    code: int = 0
    reason: bytes = b""

    def __post_init__(self) -> None:
        _check_fixed(self.reason, 96, "reason")

    def _pack(self) -> bytes:
        return self._FORMAT.pack(self.code, bytes(self.reason))

    @classmethod
    def _unpack(cls, payload: bytes) -> "Disconnect":
        code, reason = cls._FORMAT.unpack(payload)
        return cls(code=code, reason=_strip(reason))


Message = Union[Ack, Hello, Init, AddRegion, AddRing, Connect, Connected, Disconnect]

_BY_TYPE: Dict[MsgType, Type] = {
    cls.TYPE: cls
    for cls in (Ack, Hello, Init, AddRegion, AddRing, Connect, Connected, Disconnect)
}


def encode_message(msg: Message) -> bytes:
    """Encode a message into its fixed-size 128-byte wire form."""
    if type(msg) not in _BY_TYPE.values():
        raise MessageError(f"not a memif message: {msg!r}")
    try:
        payload = msg._pack()
    except struct.error as exc:
        raise MessageError(str(exc)) from exc
    return (bytes([int(msg.TYPE), 0]) + payload).ljust(MESSAGE_SIZE, b"\0")


def decode_message(data: bytes) -> Optional[Message]:
    """Decode a wire message; a NONE message decodes to None."""
    data = bytes(data)
    if not data:
        raise MessageError("empty message")
    try:
        msg_type = MsgType(data[0])
    except ValueError as exc:
        raise MessageError(f"unknown message type {data[0]}") from exc
    if msg_type is MsgType.NONE:
        return None
    cls = _BY_TYPE[msg_type]
    fmt = getattr(cls, "_FORMAT", None)
    if fmt is None:
        return cls._unpack(b"")
    payload = data[_HEADER_SIZE:_HEADER_SIZE + fmt.size]
    if len(payload) < fmt.size:
        raise MessageError(f"truncated {msg_type.name} message")
    return cls._unpack(payload)