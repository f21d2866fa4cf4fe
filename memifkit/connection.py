"""Slave side of a memif connection: handshake and packet rings."""

from __future__ import annotations

import array
import logging
import os
import socket
from dataclasses import dataclass, field, replace
from typing import List, Optional, Sequence

from .layout import (
    DESC_FLAG_NEXT,
    MemifArgs,
    Region,
    Ring,
    create_region,
    ring_size_bytes,
)
from .messages import (
    ADD_RING_FLAG_S2M,
    VERSION_MAJOR,
    VERSION_MINOR,
    AddRegion,
    AddRing,
    Connect,
    Hello,
    Init,
    InterfaceMode,
    Message,
    RingType,
    Version,
    decode_message,
    encode_message,
)

log = logging.getLogger(__name__)

BUFFER_FLAG_NEXT = 1 << 0
RECEIVE_SIZE = 2048
DEFAULT_ARGS = MemifArgs(num_s2m_rings=1, num_m2s_rings=1, log2_ring_size=10, buffer_size=2048)

_U16 = 0xFFFF


@dataclass
class Buffer:
    """A packet buffer handed out by a ring.

    ``data`` is a writable view of the whole shared buffer; ``length`` is the
    number of bytes that hold packet data.
    """

    desc_index: int
    length: int
    flags: int
    data: memoryview = field(repr=False)
    region: int = 1
    offset: int = 0

    @property
    def has_next(self) -> bool:
        return bool(self.flags & BUFFER_FLAG_NEXT)


@dataclass
class Queue:
    """Per-ring bookkeeping kept by this side of the connection."""

    log2_ring_size: int
    region: int
    offset: int
    int_fd: int
    last_head: int = 0
    last_tail: int = 0
    next_buf: int = 0
    int_count: int = 0


def _event_fd() -> int:
    if hasattr(os, "eventfd"):
        return os.eventfd(0, os.EFD_NONBLOCK)
    read_end, write_end = os.pipe()
    os.close(write_end)
    os.set_blocking(read_end, False)
    return read_end


def send_message(sock: socket.socket, msg: Message, pass_fd: Optional[int] = None) -> None:
    """Send one control message, optionally passing a file descriptor with it."""
    data = encode_message(msg)
    if pass_fd is None:
        sock.sendmsg([data])
    else:
        rights = array.array("i", [pass_fd])
        sock.sendmsg([data], [(socket.SOL_SOCKET, socket.SCM_RIGHTS, rights.tobytes())])


class MemifConnection:
    """Shared memory, rings and queues of one memif interface."""

    def __init__(
        self,
        sock: socket.socket,
        args: MemifArgs,
        regions: Sequence[Region],
        is_master: bool = False,
    ) -> None:
        if not regions:
            raise ValueError("a connection needs at least one region")
        self.sock = sock
        self.args = args
        self.regions: List[Region] = list(regions)
        self.is_master = is_master
        self.closed = False
        self._views = [memoryview(region.memory) for region in self.regions]
        self.tx_queues: List[Queue] = []
        self.rx_queues: List[Queue] = []
        for ring_type in RingType:
            for ring_num in range(self._ring_count(ring_type)):
                self.ring(ring_type, ring_num).initialize()
        self.tx_queues = self._make_queues(RingType.S2M)
        self.rx_queues = self._make_queues(RingType.M2S)

    def _ring_count(self, ring_type: RingType) -> int:
        if ring_type == RingType.S2M:
            return self.args.num_s2m_rings
        return self.args.num_m2s_rings

    def _make_queues(self, ring_type: RingType) -> List[Queue]:
        return [
            Queue(
                log2_ring_size=self.args.log2_ring_size,
                region=0,
                offset=self.ring_offset(ring_type, ring_num),
                int_fd=_event_fd(),
            )
            for ring_num in range(self._ring_count(ring_type))
        ]

    def ring_offset(self, ring_type: RingType, ring_num: int) -> int:
        """Byte offset of a ring inside the first region."""
        index = ring_num + int(ring_type) * self.args.num_s2m_rings
        return index * ring_size_bytes(self.args)

    def _ring_at(self, offset: int) -> Ring:
        ring_index = offset // ring_size_bytes(self.args)
        buffer_base = (
            self.regions[0].buffer_offset
            + ring_index * self.args.ring_entries * self.args.buffer_size
        )
        return Ring(
            self.regions[0].memory,
            offset,
            self.args.log2_ring_size,
            buffer_size=self.args.buffer_size,
            buffer_base=buffer_base,
        )

    def ring(self, ring_type: RingType, ring_num: int) -> Ring:
        """The ring of the given direction and number."""
        if not 0 <= ring_num < self._ring_count(ring_type):
            raise IndexError(f"no {RingType(ring_type).name} ring {ring_num}")
        return self._ring_at(self.ring_offset(ring_type, ring_num))

    def _region_view(self, region: int) -> memoryview:
        if not 0 <= region < len(self._views):
            raise ValueError(f"descriptor points at unknown region {region}")
        return self._views[region]

    def _view_at(self, region: int, offset: int) -> memoryview:
        return self._region_view(region)[offset:offset + self.args.buffer_size]

    def buffer_view(self, ring_offset: int, index: int) -> memoryview:
        """Writable view of the buffer that a ring slot points at."""
        desc = self._ring_at(ring_offset).get_descriptor(index)
        return self._view_at(desc.region, desc.offset)

    def refill_queue(self, qid: int, count: int = _U16, headroom: int = 0) -> int:
        """Hand receive slots back to the peer; returns the number refilled."""
        if not 0 <= qid < len(self.rx_queues):
            raise ValueError(f"{qid} larger than available queues {len(self.rx_queues)}")
        bs = self.args.buffer_size
        if not 0 <= headroom <= bs:
            raise ValueError(f"headroom {headroom} exceeds buffer size {bs}")
        mq = self.rx_queues[qid]
        ring = self._ring_at(mq.offset)

        if self.is_master:
            tail = ring.tail
            new_tail = tail + count if tail + count <= mq.last_head else mq.last_head
            ring.tail = new_tail
            return (new_tail - tail) & _U16

        head = ring.head
        free = (ring.size + mq.last_tail - head) & _U16
        count = min(count, free)
        for step in range(count):
            slot = (head + step) & ring.mask
            desc = ring.get_descriptor(slot)
            ring.set_descriptor(
                slot,
                replace(
                    desc,
                    region=1,
                    length=bs - headroom,
                    offset=desc.offset - desc.offset % bs + headroom,
                ),
            )
        ring.head = (head + count) & _U16
        return count

    def buffer_alloc(self, qid: int, count: int, size: int) -> List[Buffer]:
        """Reserve transmit buffers, chaining several when one is too small."""
        mq = self.tx_queues[qid]
        ring = self._ring_at(mq.offset)
        mask = ring.mask
        bs = self.args.buffer_size

        if self.is_master:
            free = (ring.head - mq.next_buf) & _U16
        else:
            free = (ring.size - (mq.next_buf & _U16) + ring.tail) & _U16

        out: List[Buffer] = []
        remaining = count
        while remaining > 0 and free > 0:
            saved_len = len(out)
            saved_next_buf = mq.next_buf
            saved_free = free
            if self.is_master:
                dst_left = ring.get_descriptor(mq.next_buf & mask).length
            else:
                dst_left = bs
            src_left = size
            rolled_back = False

            while src_left > 0:
                desc_index = mq.next_buf & _U16
                slot = desc_index & mask
                chunk = min(dst_left, src_left)
                desc = ring.get_descriptor(slot)
                if self.is_master:
                    desc = replace(desc, offset=desc.offset - desc.offset % bs)
                    ring.set_descriptor(slot, desc)

                src_left -= chunk
                dst_left -= chunk
                free -= 1
                mq.next_buf += 1

                flags = 0
                if src_left > 0 and dst_left == 0:
                    if free == 0:
                        mq.next_buf = saved_next_buf
                        free = saved_free
                        del out[saved_len:]
                        rolled_back = True
                        break
                    ring.set_descriptor(slot, replace(desc, flags=desc.flags | DESC_FLAG_NEXT))
                    next_slot = mq.next_buf & mask
                    next_desc = replace(ring.get_descriptor(next_slot), flags=0)
                    ring.set_descriptor(next_slot, next_desc)
                    flags = BUFFER_FLAG_NEXT
                    dst_left = next_desc.length if self.is_master else bs

                out.append(
                    Buffer(
                        desc_index=desc_index,
                        length=chunk,
                        flags=flags,
                        data=self._view_at(desc.region, desc.offset),
                        region=desc.region,
                        offset=desc.offset,
                    )
                )
            if rolled_back:
                break
            remaining -= 1

        if remaining > 0:
            log.debug("ring buffer full, qid: %d", qid)
        return out

    def tx_burst(self, qid: int, bufs: Sequence[Buffer]) -> int:
        """Publish allocated buffers to the peer; returns how many went out."""
        if not bufs:
            return 0
        mq = self.tx_queues[qid]
        ring = self._ring_at(mq.offset)
        mask = ring.mask
        bs = self.args.buffer_size

        index = ring.tail if self.is_master else ring.head
        sent = 0
        for buf in bufs:
            if buf.desc_index & mask != index & mask:
                raise ValueError("invalid descriptor index")
            slot = buf.desc_index & mask
            desc = replace(
                ring.get_descriptor(slot),
                length=buf.length,
                flags=DESC_FLAG_NEXT if buf.flags & BUFFER_FLAG_NEXT else 0,
            )
            if not self.is_master:
                desc = replace(desc, offset=desc.offset - desc.offset % bs)
                data_offset = buf.offset - desc.offset
                if data_offset != 0:
                    if data_offset < 0 or data_offset + buf.length > bs:
                        ring.set_descriptor(slot, desc)
                        break
                    desc = replace(desc, offset=desc.offset + data_offset)
            ring.set_descriptor(slot, desc)
            sent += 1
            index = (index + 1) & _U16

        if self.is_master:
            ring.tail = index
        else:
            ring.head = index
        return sent

    def rx_burst(self, qid: int, count: int) -> List[Buffer]:
        """Collect up to ``count`` buffers the peer has filled."""
        mq = self.rx_queues[qid]
        ring = self._ring_at(mq.offset)
        mask = ring.mask

        cur_slot = mq.last_head if self.is_master else mq.last_tail
        last_slot = ring.head if self.is_master else ring.tail
        if cur_slot == last_slot:
            return []

        pending = (last_slot - cur_slot) & _U16
        out: List[Buffer] = []
        while pending > 0 and count > 0:
            slot = cur_slot & mask
            desc = ring.get_descriptor(slot)
            has_next = bool(desc.flags & DESC_FLAG_NEXT)
            out.append(
                Buffer(
                    desc_index=cur_slot,
                    length=desc.length,
                    flags=BUFFER_FLAG_NEXT if has_next else 0,
                    data=self._view_at(desc.region, desc.offset),
                    region=desc.region,
                    offset=desc.offset,
                )
            )
            updated = desc
            if not self.is_master:
                updated = replace(updated, length=self.args.buffer_size)
            if has_next:
                updated = replace(updated, flags=updated.flags & ~DESC_FLAG_NEXT)
            if updated != desc:
                ring.set_descriptor(slot, updated)
            pending -= 1
            count -= 1
            cur_slot = (cur_slot + 1) & _U16

        if self.is_master:
            mq.last_head = cur_slot
        else:
            mq.last_tail = cur_slot
        return out

    def _enqueue_add_ring(self, ring_type: RingType, index: int) -> None:
        flags = ADD_RING_FLAG_S2M if ring_type == RingType.S2M else 0
        mq = self.rx_queues[index] if ring_type == RingType.M2S else self.tx_queues[index]
        msg = AddRing(
            flags=flags,
            index=index,
            region=mq.region,
            offset=mq.offset,
            log2_ring_size=mq.log2_ring_size,
            private_hdr_size=0,
        )
        send_message(self.sock, msg, mq.int_fd)

    def _handshake(self, interface_id: int) -> None:
        init = Init(
            version=Version(major=VERSION_MAJOR, minor=VERSION_MINOR),
            interface_id=interface_id,
            mode=InterfaceMode.ETHERNET,
            name=b"\x42" * 32,
        )
        send_message(self.sock, init)
        for index, region in enumerate(self.regions):
            send_message(self.sock, AddRegion(index=index, size=region.size), region.fd)
        for index in range(self.args.num_m2s_rings):
            self._enqueue_add_ring(RingType.M2S, index)
        for index in range(self.args.num_s2m_rings):
            self._enqueue_add_ring(RingType.S2M, index)
        send_message(self.sock, Connect(if_name=b"\x43" * 32))

    def close(self) -> None:
        """Close the socket, interrupt descriptors and shared memory."""
        if self.closed:
            return
        self.closed = True
        self.sock.close()
        for queue in (*self.tx_queues, *self.rx_queues):
            try:
                os.close(queue.int_fd)
            except OSError:
                pass
        for view in self._views:
            view.release()
        for region in self.regions:
            try:
                region.close()
            except BufferError:
                # Buffers handed out are still alive; the mapping goes with them.
                os.close(region.fd)

    def __enter__(self) -> "MemifConnection":
        return self

    def __exit__(self, *args) -> None:
        self.close()


def connect(socket_path: str, interface_id: int = 0) -> MemifConnection:
    """Connect as slave to the memif master listening on ``socket_path``."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_SEQPACKET)
    try:
        sock.connect(socket_path)
        data = sock.recv(RECEIVE_SIZE)
        log.debug("received %d bytes", len(data))
        msg = decode_message(data)
        if not isinstance(msg, Hello):
            raise ConnectionError(f"expected a hello message, got {msg!r}")
        log.debug("peer name: %s", msg.name.decode("utf-8", "replace"))
        regions: List[Region] = []
        try:
            regions.append(create_region(DEFAULT_ARGS, False))
            regions.append(create_region(DEFAULT_ARGS, True))
        except BaseException:
            for region in regions:
                region.close()
            raise
        conn = MemifConnection(sock, DEFAULT_ARGS, regions)
    except BaseException:
        sock.close()
        raise
    try:
        conn._handshake(interface_id)
    except BaseException:
        conn.close()
        raise
    return conn