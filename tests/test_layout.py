import os

import pytest

from memifkit.layout import (
    DESCRIPTOR_SIZE,
    Descriptor,
    MemifArgs,
    Ring,
    create_region,
    ring_size_bytes,
)
from memifkit.messages import COOKIE


def small_ring(log2=2, buffer_size=64, buffer_base=1000, offset=0):
    args = MemifArgs(log2_ring_size=log2, buffer_size=buffer_size)
    memory = bytearray(offset + ring_size_bytes(args))
    return memory, Ring(memory, offset, log2, buffer_size=buffer_size, buffer_base=buffer_base)


def test_ring_size_single_entry():
    assert ring_size_bytes(MemifArgs(log2_ring_size=0)) == 272


@pytest.mark.parametrize("log2", [0, 3, 10])
def test_ring_size_grows_by_descriptors(log2):
    small = ring_size_bytes(MemifArgs(log2_ring_size=log2))
    large = ring_size_bytes(MemifArgs(log2_ring_size=log2 + 1))
    assert large - small == DESCRIPTOR_SIZE * (1 << log2)


def test_descriptor_wire_bytes():
    packed = Descriptor(flags=1, region=2, length=3, offset=4, metadata=5).pack()
    assert packed == bytes([1, 0, 2, 0, 3, 0, 0, 0, 4, 0, 0, 0, 5, 0, 0, 0])


def test_descriptor_round_trip():
    desc = Descriptor(flags=1, region=1, length=2048, offset=0x8000, metadata=9)
    assert Descriptor.unpack(desc.pack()) == desc


def test_descriptor_unpack_wrong_length():
    with pytest.raises(ValueError):
        Descriptor.unpack(b"\x00" * 8)


def test_region_without_buffers_holds_only_rings():
    args = MemifArgs(log2_ring_size=4)
    with create_region(args, False) as region:
        assert region.size == region.buffer_offset
        assert region.buffer_offset == args.total_rings * ring_size_bytes(args)
        assert len(region.memory) == region.size


def test_region_with_buffers_is_larger():
    args = MemifArgs(log2_ring_size=4, buffer_size=256)
    with create_region(args, True) as region:
        extra = region.size - region.buffer_offset
        assert extra > 0
        assert extra % args.buffer_size == 0
        assert os.fstat(region.fd).st_size == region.size


def test_region_memory_is_shared_with_fd():
    args = MemifArgs(log2_ring_size=2)
    with create_region(args, False) as region:
        region.memory[0:3] = b"abc"
        assert os.pread(region.fd, 3, 0) == b"abc"


def test_region_close_is_idempotent():
    region = create_region(MemifArgs(log2_ring_size=2), False)
    region.close()
    region.close()
    assert region.closed
    assert region.memory.closed


def test_empty_region_rejected():
    with pytest.raises(ValueError):
        create_region(MemifArgs(num_s2m_rings=0, num_m2s_rings=0), True)


def test_initialize_sets_header():
    memory, ring = small_ring()
    ring.head = 5
    ring.tail = 7
    ring.initialize()
    assert ring.cookie == COOKIE
    assert memory[0:4] == COOKIE.to_bytes(4, "little")
    assert (ring.head, ring.tail, ring.flags) == (0, 0, 0)


def test_initialize_points_slots_at_consecutive_buffers():
    _, ring = small_ring(log2=3, buffer_size=64, buffer_base=1000)
    ring.initialize()
    descs = [ring.get_descriptor(i) for i in range(ring.size)]
    assert all(d.region == 1 and d.length == 64 for d in descs)
    assert descs[0].offset == 1000
    assert all(b.offset - a.offset == 64 for a, b in zip(descs, descs[1:]))


def test_initialize_at_offset_leaves_prefix():
    memory, ring = small_ring(offset=64)
    ring.initialize()
    assert memory[:64] == bytes(64)
    assert ring.cookie == COOKIE


def test_head_and_tail_locations():
    memory, ring = small_ring()
    ring.head = 0x1234
    ring.tail = 0x0102
    assert memory[6:8] == (0x1234).to_bytes(2, "little")
    assert memory[128:130] == (0x0102).to_bytes(2, "little")


def test_head_wraps_at_sixteen_bits():
    _, ring = small_ring()
    ring.head = 0xFFFF + 3
    assert ring.head == 2


def test_set_and_get_descriptor():
    _, ring = small_ring()
    desc = Descriptor(flags=1, region=1, length=10, offset=20)
    ring.set_descriptor(3, desc)
    assert ring.get_descriptor(3) == desc
    assert ring.get_descriptor(2) == Descriptor()


def test_descriptor_index_out_of_range():
    _, ring = small_ring(log2=2)
    with pytest.raises(IndexError):
        ring.get_descriptor(4)
    with pytest.raises(IndexError):
        ring.set_descriptor(-1, Descriptor())


def test_ring_must_fit_in_memory():
    with pytest.raises(ValueError):
        Ring(bytearray(100), 0, 2)


def test_mask_matches_size():
    _, ring = small_ring(log2=3)
    assert ring.mask + 1 == ring.size
    assert ring.size & ring.mask == 0