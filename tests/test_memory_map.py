from dataclasses import dataclass

import pytest

from bootimage.memory_map import (
    LegacyFrameAllocator,
    LegacyMemoryRegion,
    MemoryRegion,
    MemoryRegionKind,
    UsedMemorySlice,
)

MAX_PHYS_ADDR = 0x4000_0000


@dataclass(frozen=True)
class FakeRegion(LegacyMemoryRegion):
    base: int
    size: int
    region_kind: MemoryRegionKind

    def start(self):
        return self.base

    def length(self):
        assert self.size % 4096 == 0
        return self.size

    def kind(self):
        return self.region_kind

    def usable_after_bootloader_exit(self):
        return self.region_kind == MemoryRegionKind.usable()


def single_region():
    return [FakeRegion(0, MAX_PHYS_ADDR, MemoryRegionKind.usable())]


USABLE = MemoryRegionKind.usable()
BOOTLOADER = MemoryRegionKind.bootloader()


def test_all_regions_frame_aligned():
    allocator = LegacyFrameAllocator(single_region())
    allocator.allocate_frame()
    regions = allocator.construct_memory_map(0x50000, 0x0500, None, 0, max_regions=10)
    assert regions
    for region in regions:
        assert region.start % 0x1000 == 0
        assert region.end % 0x1000 == 0


def test_kernel_and_ram_in_same_region():
    allocator = LegacyFrameAllocator(single_region())
    allocator.allocate_frame()
    regions = allocator.construct_memory_map(0x50000, 0x1000, 0x60000, 0x2000, max_regions=10)
    assert regions == [
        MemoryRegion(0x0000, 0x50000, USABLE),
        MemoryRegion(0x50000, 0x51000, BOOTLOADER),
        MemoryRegion(0x51000, 0x60000, USABLE),
        MemoryRegion(0x60000, 0x62000, BOOTLOADER),
        MemoryRegion(0x62000, 0x10_0000, USABLE),
        MemoryRegion(0x10_0000, 0x10_1000, BOOTLOADER),
        MemoryRegion(0x10_1000, MAX_PHYS_ADDR, USABLE),
    ]


def test_multiple_regions():
    memory = [
        FakeRegion(0, 0x10_0000, USABLE),
        FakeRegion(0x10_0000, 0x5000, MemoryRegionKind.unknown_bios(0)),
        FakeRegion(0x10_5000, MAX_PHYS_ADDR - 0x10_5000, USABLE),
    ]
    allocator = LegacyFrameAllocator(memory)
    allocator.allocate_frame()
    regions = allocator.construct_memory_map(0x50000, 0x1000, 0x60000, 0x2000, max_regions=10)
    assert regions == [
        MemoryRegion(0x0000, 0x50000, USABLE),
        MemoryRegion(0x50000, 0x51000, BOOTLOADER),
        MemoryRegion(0x51000, 0x60000, USABLE),
        MemoryRegion(0x60000, 0x62000, BOOTLOADER),
        MemoryRegion(0x62000, 0x10_0000, USABLE),
        MemoryRegion(0x10_0000, 0x10_5000, MemoryRegionKind.unknown_bios(0)),
        MemoryRegion(0x10_5000, 0x10_6000, BOOTLOADER),
        MemoryRegion(0x10_6000, MAX_PHYS_ADDR, USABLE),
    ]


def test_first_frame_skips_lower_memory():
    allocator = LegacyFrameAllocator(single_region())
    assert allocator.allocate_frame() == 0x10_0000


def test_start_frame_below_lower_memory_is_clamped():
    allocator = LegacyFrameAllocator(single_region(), start_frame=0)
    assert allocator.allocate_frame() == 0x10_0000


def test_start_frame_above_lower_memory_is_respected():
    allocator = LegacyFrameAllocator(single_region(), start_frame=0x20_0000)
    assert allocator.allocate_frame() == 0x20_0000


def test_frames_are_consecutive_and_exhaust():
    memory = [FakeRegion(0x10_0000, 0x2000, USABLE)]
    allocator = LegacyFrameAllocator(memory)
    first = allocator.allocate_frame()
    second = allocator.allocate_frame()
    assert first == 0x10_0000
    assert second == first + 0x1000
    assert allocator.allocate_frame() is None


def test_unusable_regions_are_skipped():
    memory = [
        FakeRegion(0x10_0000, 0x1000, MemoryRegionKind.unknown_bios(2)),
        FakeRegion(0x20_0000, 0x1000, USABLE),
    ]
    allocator = LegacyFrameAllocator(memory)
    assert allocator.allocate_frame() == 0x20_0000
    assert allocator.allocate_frame() is None


def test_len_and_is_empty():
    allocator = LegacyFrameAllocator(single_region())
    assert len(allocator) == 1
    assert not allocator.is_empty()
    allocator.allocate_frame()
    assert len(allocator) == 1
    assert LegacyFrameAllocator([]).is_empty()


def test_max_region_count():
    allocator = LegacyFrameAllocator(single_region())
    assert allocator.memory_map_max_region_count() == len(allocator) + 6


def test_max_phys_addr_covers_first_4gib():
    allocator = LegacyFrameAllocator(single_region())
    assert allocator.max_phys_addr() == 0x1_0000_0000


def test_max_phys_addr_above_4gib():
    top = 0x2_0000_0000
    allocator = LegacyFrameAllocator([FakeRegion(0x1_0000_0000, top - 0x1_0000_0000, USABLE)])
    assert allocator.max_phys_addr() == top


def test_max_phys_addr_empty_raises():
    with pytest.raises(ValueError):
        LegacyFrameAllocator([]).max_phys_addr()


def test_region_capacity_exceeded():
    allocator = LegacyFrameAllocator(single_region())
    allocator.allocate_frame()
    with pytest.raises(OverflowError):
        allocator.construct_memory_map(0x50000, 0x1000, 0x60000, 0x2000, max_regions=3)


def test_default_capacity_is_enough():
    allocator = LegacyFrameAllocator(single_region())
    allocator.allocate_frame()
    regions = allocator.construct_memory_map(0x50000, 0x1000, 0x60000, 0x2000)
    assert len(regions) <= allocator.memory_map_max_region_count()
    assert regions[0].start == 0
    assert regions[-1].end == MAX_PHYS_ADDR


def test_memory_map_is_contiguous():
    allocator = LegacyFrameAllocator(single_region())
    for _ in range(5):
        allocator.allocate_frame()
    regions = allocator.construct_memory_map(0x50000, 0x1234, 0x80000, 0x10, max_regions=10)
    for previous, following in zip(regions, regions[1:]):
        assert previous.end == following.start
        assert previous.start < previous.end


def test_used_memory_slice_from_len():
    assert UsedMemorySlice.new_from_len(0x1000, 0x500) == UsedMemorySlice(0x1000, 0x1500)


def test_kind_equality():
    assert MemoryRegionKind.unknown_uefi(3) == MemoryRegionKind.unknown_uefi(3)
    assert MemoryRegionKind.unknown_uefi(3) != MemoryRegionKind.unknown_bios(3)
    assert MemoryRegionKind.usable() != MemoryRegionKind.bootloader()


def test_region_is_empty():
    assert FakeRegion(0x1000, 0, USABLE).is_empty()
    assert not FakeRegion(0x1000, 0x1000, USABLE).is_empty()