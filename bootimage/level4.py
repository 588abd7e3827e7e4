"""Bookkeeping of used level 4 page table entries for choosing free virtual memory."""

from __future__ import annotations

import random
from typing import List, Optional

ENTRY_COUNT = 512
PAGE_SIZE = 4096
LEVEL_4_SIZE = PAGE_SIZE * 512 * 512 * 512
_LOWER_HALF_LAST_PAGE = 0x0000_7FFF_FFFF_F000
_UPPER_HALF_FIRST_PAGE = 0xFFFF_8000_0000_0000
_LAST_PAGE = 0xFFFF_FFFF_FFFF_F000


def _check_canonical(address: int) -> int:
    if not 0 <= address < 2**64 or (address >> 47) not in (0, 0x1FFFF):
        raise ValueError(f"virtual address {address:#x} is not canonical")
    return address


def p4_index(address: int) -> int:
    """The level 4 page table index of a canonical virtual address."""
    return (_check_canonical(address) >> 39) & 0x1FF


def _prev_page(page: int) -> Optional[int]:
    if page == 0:
        return None
    if page == _UPPER_HALF_FIRST_PAGE:
        return _LOWER_HALF_LAST_PAGE
    return page - PAGE_SIZE


def _next_page(page: int) -> Optional[int]:
    if page == _LAST_PAGE:
        return None
    if page == _LOWER_HALF_LAST_PAGE:
        return _UPPER_HALF_FIRST_PAGE
    return page + PAGE_SIZE


class UsedLevel4Entries:
    """Tracks which of the 512 level 4 entries are in use.

    With an ``rng`` free entries and offsets are chosen at random (ASLR);
    without one, the first free entry is used.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._used: List[bool] = [False] * ENTRY_COUNT
        self._rng = rng

    def is_used(self, index: int) -> bool:
        return self._used[index]

    def mark_p4_index_as_used(self, index: int) -> None:
        if not 0 <= index < ENTRY_COUNT:
            raise IndexError(f"level 4 index {index} out of range")
        self._used[index] = True

    def mark_range_as_used(self, address: int, size: int) -> None:
        """Mark every entry touched by ``[address, address + size)``."""
        first = p4_index(address)
        last = p4_index(address + size - 1)
        for index in range(first, last + 1):
            self._used[index] = True

    def restrict_dynamic_range(self, start: Optional[int] = None, end: Optional[int] = None) -> None:
        """Mark entries before ``start`` and after ``end`` as unusable."""
        if start is not None:
            unusable = _prev_page(_check_canonical(start) & ~(PAGE_SIZE - 1))
            if unusable is not None:
                for index in range(p4_index(unusable) + 1):
                    self._used[index] = True
        if end is not None:
            unusable = _next_page(_check_canonical(end) & ~(PAGE_SIZE - 1))
            if unusable is not None:
                for index in range(p4_index(unusable), ENTRY_COUNT):
                    self._used[index] = True

    def get_free_entries(self, num: int) -> int:
        """Claim ``num`` contiguous free entries and return the first index."""
        if num <= 0:
            raise ValueError("number of entries must be positive")
        candidates = [
            idx for idx in range(ENTRY_COUNT - num + 1)
            if not any(self._used[idx : idx + num])
        ]
        if not candidates:
            raise MemoryError(f"no usable level 4 entries found ({num} entries requested)")
        idx = self._rng.choice(candidates) if self._rng is not None else candidates[0]
        for i in range(idx, idx + num):
            self._used[i] = True
        return idx

    def get_free_address(self, size: int, alignment: int) -> int:
        """Claim free entries for ``size`` bytes and return an aligned address in them."""
        if alignment <= 0 or alignment & (alignment - 1):
            raise ValueError("alignment must be a power of two")
        entries = (size + LEVEL_4_SIZE - 1) // LEVEL_4_SIZE
        index = self.get_free_entries(entries)
        base = index << 39
        if index >= 256:
            base |= 0xFFFF << 48
        offset = 0
        if self._rng is not None:
            max_offset = LEVEL_4_SIZE - (size % LEVEL_4_SIZE)
            offset = self._rng.randrange(max_offset // alignment) * alignment
        return base + offset