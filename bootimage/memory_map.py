"""Physical memory maps and a frame allocator driven by firmware memory maps."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence

FRAME_SIZE = 0x1000
# Start address of the first frame above the lower 1 MiB of physical memory.
LOWER_MEMORY_END_PAGE = 0x10_0000
# The physical memory mapping always covers at least the first 4 GiB.
MIN_MAX_PHYS_ADDR = 0x1_0000_0000
# Three used slices (kernel, ramdisk, bootloader heap) can each split a region in three.
_EXTRA_REGIONS = 6


def _align_down(value: int, align: int) -> int:
    return value & ~(align - 1)


def _align_up(value: int, align: int) -> int:
    return (value + align - 1) & ~(align - 1)


class _Category(enum.Enum):
    USABLE = "usable"
    BOOTLOADER = "bootloader"
    UNKNOWN_UEFI = "unknown_uefi"
    UNKNOWN_BIOS = "unknown_bios"


@dataclass(frozen=True)
class MemoryRegionKind:
    """The kind of a physical memory region."""

    category: _Category
    code: Optional[int] = None

    @classmethod
    def usable(cls) -> MemoryRegionKind:
        """Memory that is free for the kernel to use."""
        return cls(_Category.USABLE)

    @classmethod
    def bootloader(cls) -> MemoryRegionKind:
        """Memory in use by the bootloader, the kernel image or the ramdisk."""
        return cls(_Category.BOOTLOADER)

    @classmethod
    def unknown_uefi(cls, code: int) -> MemoryRegionKind:
        """A UEFI memory type that has no dedicated kind."""
        return cls(_Category.UNKNOWN_UEFI, int(code))

    @classmethod
    def unknown_bios(cls, code: int) -> MemoryRegionKind:
        """A BIOS (E820) memory type that has no dedicated kind."""
        return cls(_Category.UNKNOWN_BIOS, int(code))

    def __str__(self) -> str:
        if self.code is None:
            return self.category.value
        return f"{self.category.value}({self.code:#x})"


@dataclass(frozen=True)
class MemoryRegion:
    """A physical memory region with an exclusive end address."""

    start: int
    end: int
    kind: MemoryRegionKind


@dataclass(frozen=True)
class UsedMemorySlice:
    """A slice of physical memory used by the bootloader that the kernel must keep."""

    start: int
    end: int

    @classmethod
    def new_from_len(cls, start: int, length: int) -> UsedMemorySlice:
        """Create a slice from a start address and a length."""
        return cls(start, start + length)


class LegacyMemoryRegion(ABC):
    """A memory region as reported by the UEFI or BIOS firmware."""

    @abstractmethod
    def start(self) -> int:
        """Physical start address of the region."""

    @abstractmethod
    def length(self) -> int:
        """Size of the region in bytes."""

    def is_empty(self) -> bool:
        """Whether the region has zero length."""
        return self.length() == 0

    @abstractmethod
    def kind(self) -> MemoryRegionKind:
        """The type of the region, e.g. usable or reserved."""

    @abstractmethod
    def usable_after_bootloader_exit(self) -> bool:
        """Whether the region becomes usable once the bootloader hands over to the kernel."""


class LegacyFrameAllocator:
    """Allocates 4 KiB physical frames from usable regions of a firmware memory map.

    Frames below 1 MiB are never handed out, so lower conventional memory stays
    free and the frame at address zero is never used.
    """

    def __init__(
        self,
        memory_map: Iterable[LegacyMemoryRegion],
        start_frame: Optional[int] = None,
    ) -> None:
        first = LOWER_MEMORY_END_PAGE if start_frame is None else start_frame
        frame = max(_align_down(first, FRAME_SIZE), LOWER_MEMORY_END_PAGE)
        self._original: Sequence[LegacyMemoryRegion] = tuple(memory_map)
        self._remaining: Iterator[LegacyMemoryRegion] = iter(self._original)
        self._current: Optional[LegacyMemoryRegion] = None
        self._next_frame = frame
        self._min_frame = frame

    def _allocate_from(self, descriptor: LegacyMemoryRegion) -> Optional[int]:
        start_addr = descriptor.start()
        start_frame = _align_down(start_addr, FRAME_SIZE)
        end_frame = _align_down(start_addr + descriptor.length() - 1, FRAME_SIZE)
        if self._next_frame < start_frame:
            self._next_frame = start_frame
        if self._next_frame <= end_frame:
            frame = self._next_frame
            self._next_frame += FRAME_SIZE
            return frame
        return None

    def allocate_frame(self) -> Optional[int]:
        """Return the start address of a fresh frame, or None when memory is exhausted."""
        if self._current is not None:
            frame = self._allocate_from(self._current)
            if frame is not None:
                return frame
            self._current = None

        usable = MemoryRegionKind.usable()
        for descriptor in self._remaining:
            if descriptor.kind() != usable:
                continue
            frame = self._allocate_from(descriptor)
            if frame is not None:
                self._current = descriptor
                return frame
        return None

    def __len__(self) -> int:
        return len(self._original)

    def is_empty(self) -> bool:
        """Whether the underlying memory map has no regions."""
        return len(self) == 0

    def max_phys_addr(self) -> int:
        """The largest physical address in the map, but at least 4 GiB."""
        if not self._original:
            raise ValueError("memory map is empty")
        highest = max(r.start() + r.length() for r in self._original)
        return max(highest, MIN_MAX_PHYS_ADDR)

    def memory_map_max_region_count(self) -> int:
        """Upper bound on the number of regions that construct_memory_map produces."""
        return len(self) + _EXTRA_REGIONS

    def construct_memory_map(
        self,
        kernel_slice_start: int,
        kernel_slice_len: int,
        ramdisk_slice_start: Optional[int] = None,
        ramdisk_slice_len: int = 0,
        max_regions: Optional[int] = None,
    ) -> List[MemoryRegion]:
        """Build the memory map handed to the kernel.

        Usable regions are split around the memory used by the bootloader's
        allocations, the kernel image and the ramdisk, which are reported as
        bootloader memory. Raises OverflowError if more than ``max_regions``
        regions would be produced.
        """
        slices = [
            UsedMemorySlice(self._min_frame, self._next_frame),
            UsedMemorySlice.new_from_len(kernel_slice_start, kernel_slice_len),
        ]
        if ramdisk_slice_start is not None:
            slices.append(UsedMemorySlice.new_from_len(ramdisk_slice_start, ramdisk_slice_len))
        used = [
            UsedMemorySlice(_align_down(s.start, FRAME_SIZE), _align_up(s.end, FRAME_SIZE))
            for s in slices
        ]

        capacity = self.memory_map_max_region_count() if max_regions is None else max_regions
        usable = MemoryRegionKind.usable()
        result: List[MemoryRegion] = []

        def add(region: MemoryRegion) -> None:
            if region.start == region.end:
                return
            if len(result) >= capacity:
                raise OverflowError("cannot add region: no more free entries in memory map")
            result.append(region)

        for descriptor in self._original:
            kind = usable if descriptor.usable_after_bootloader_exit() else descriptor.kind()
            start = descriptor.start()
            region = MemoryRegion(start, start + descriptor.length(), kind)
            if kind == usable:
                for piece in _split_usable(region, used):
                    add(piece)
            else:
                add(region)
        return result


def _split_usable(
    region: MemoryRegion, used: Sequence[UsedMemorySlice]
) -> Iterator[MemoryRegion]:
    usable = MemoryRegionKind.usable()
    bootloader = MemoryRegionKind.bootloader()
    start, end = region.start, region.end
    while start != end:
        overlaps = [
            (max(start, s.start), min(end, s.end))
            for s in used
            if max(start, s.start) < min(end, s.end)
        ]
        if not overlaps:
            yield MemoryRegion(start, end, usable)
            return
        overlap_start, overlap_end = min(overlaps, key=lambda o: o[0])
        yield MemoryRegion(start, overlap_start, usable)
        yield MemoryRegion(overlap_start, overlap_end, bootloader)
        start = overlap_end