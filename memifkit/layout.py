"""Shared-memory layout of memif regions, rings and descriptors."""

from __future__ import annotations

import fcntl
import logging
import mmap
import os
import struct
import tempfile
from dataclasses import dataclass, field, replace
from typing import Union

from .messages import COOKIE

log = logging.getLogger(__name__)

RING_HEADER_SIZE = 256
DESCRIPTOR_SIZE = 16
DESC_FLAG_NEXT = 1 << 0

_COOKIE_OFFSET = 0
_FLAGS_OFFSET = 4
_HEAD_OFFSET = 6
_TAIL_OFFSET = 128
_DESCRIPTOR = struct.Struct("<HHIII")

Memory = Union[bytearray, mmap.mmap, memoryview]


@dataclass(frozen=True)
class MemifArgs:
    """Ring and buffer geometry of a connection."""

    num_s2m_rings: int = 1
    num_m2s_rings: int = 1
    log2_ring_size: int = 10
    buffer_size: int = 2048

    @property
    def ring_entries(self) -> int:
        return 1 << self.log2_ring_size

    @property
    def total_rings(self) -> int:
        return self.num_s2m_rings + self.num_m2s_rings


def ring_size_bytes(args: MemifArgs) -> int:
    """Bytes taken by one ring: its header plus all descriptors."""
    return RING_HEADER_SIZE + DESCRIPTOR_SIZE * args.ring_entries


@dataclass(frozen=True)
class Descriptor:
    """One ring slot describing a packet buffer."""

    flags: int = 0
    region: int = 0
    length: int = 0
    offset: int = 0
    metadata: int = 0

    def pack(self) -> bytes:
        return _DESCRIPTOR.pack(self.flags, self.region, self.length, self.offset, self.metadata)

    @classmethod
    def unpack(cls, data: bytes) -> "Descriptor":
        if len(data) != DESCRIPTOR_SIZE:
            raise ValueError(f"descriptor needs {DESCRIPTOR_SIZE} bytes, got {len(data)}")
        return cls(*_DESCRIPTOR.unpack(data))


@dataclass
class Region:
    """A shared memory region backed by an anonymous file descriptor."""

    fd: int
    size: int
    buffer_offset: int
    memory: mmap.mmap
    closed: bool = field(default=False, init=False)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.memory.close()
        os.close(self.fd)

    def __enter__(self) -> "Region":
        return self

    def __exit__(self, *args) -> None:
        self.close()


def _anonymous_fd(name: str) -> int:
    if hasattr(os, "memfd_create"):
        fd = os.memfd_create(name, os.MFD_ALLOW_SEALING)
        try:
            fcntl.fcntl(fd, fcntl.F_ADD_SEALS, fcntl.F_SEAL_SHRINK)
        except BaseException:
            os.close(fd)
            raise
        return fd
    fd, path = tempfile.mkstemp(prefix="memif-region-")
    os.unlink(path)
    return fd


def create_region(args: MemifArgs, has_buffers: bool) -> Region:
    """Create and map a region holding all rings and, optionally, their buffers."""
    buffer_offset = args.total_rings * ring_size_bytes(args)
    size = buffer_offset
    if has_buffers:
        size += args.buffer_size * args.ring_entries * args.total_rings
    if size <= 0:
        raise ValueError("region size must be positive")
    log.debug("region: buffer_offset=%#x size=%#x buffers=%s", buffer_offset, size, has_buffers)
    fd = _anonymous_fd("memif region 0")
    try:
        os.ftruncate(fd, size)
        memory = mmap.mmap(fd, size, flags=mmap.MAP_SHARED, prot=mmap.PROT_READ | mmap.PROT_WRITE)
    except BaseException:
        os.close(fd)
        raise
    return Region(fd=fd, size=size, buffer_offset=buffer_offset, memory=memory)


class Ring:
    """View of one ring (header and descriptors) inside shared memory."""

    def __init__(
        self,
        memory: Memory,
        offset: int,
        log2_ring_size: int,
        buffer_size: int = 2048,
        buffer_base: int = 0,
    ) -> None:
        self.memory = memory
        self.offset = offset
        self.log2_ring_size = log2_ring_size
        self.buffer_size = buffer_size
        self.buffer_base = buffer_base
        end = offset + RING_HEADER_SIZE + DESCRIPTOR_SIZE * self.size
        if offset < 0 or end > len(memory):
            raise ValueError("ring does not fit in memory")

    @property
    def size(self) -> int:
        return 1 << self.log2_ring_size

    @property
    def mask(self) -> int:
        return self.size - 1

    def _read(self, fmt: str, at: int) -> int:
        return struct.unpack_from(fmt, self.memory, self.offset + at)[0]

    def _write(self, fmt: str, at: int, value: int, bits: int) -> None:
        struct.pack_into(fmt, self.memory, self.offset + at, value & ((1 << bits) - 1))

    @property
    def cookie(self) -> int:
        return self._read("<I", _COOKIE_OFFSET)

    @cookie.setter
    def cookie(self, value: int) -> None:
        self._write("<I", _COOKIE_OFFSET, value, 32)

    @property
    def flags(self) -> int:
        return self._read("<H", _FLAGS_OFFSET)

    @flags.setter
    def flags(self, value: int) -> None:
        self._write("<H", _FLAGS_OFFSET, value, 16)

    @property
    def head(self) -> int:
        return self._read("<H", _HEAD_OFFSET)

    @head.setter
    def head(self, value: int) -> None:
        self._write("<H", _HEAD_OFFSET, value, 16)

    @property
    def tail(self) -> int:
        return self._read("<H", _TAIL_OFFSET)

    @tail.setter
    def tail(self, value: int) -> None:
        self._write("<H", _TAIL_OFFSET, value, 16)

    def _descriptor_position(self, index: int) -> int:
        if not 0 <= index < self.size:
            raise IndexError(f"descriptor index {index} out of range")
        return self.offset + RING_HEADER_SIZE + index * DESCRIPTOR_SIZE

    def initialize(self) -> None:
        """Reset the header and point every slot at its own buffer."""
        self.cookie = COOKIE
        self.head = 0
        self.tail = 0
        self.flags = 0
        for index in range(self.size):
            desc = self.get_descriptor(index)
            self.set_descriptor(
                index,
                replace(
                    desc,
                    region=1,
                    offset=self.buffer_base + index * self.buffer_size,
                    length=self.buffer_size,
                ),
            )

    def get_descriptor(self, index: int) -> Descriptor:
        pos = self._descriptor_position(index)
        return Descriptor.unpack(bytes(self.memory[pos:pos + DESCRIPTOR_SIZE]))

    def set_descriptor(self, index: int, desc: Descriptor) -> None:
        pos = self._descriptor_position(index)
        self.memory[pos:pos + DESCRIPTOR_SIZE] = desc.pack()