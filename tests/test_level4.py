import random

import pytest

from bootimage.level4 import LEVEL_4_SIZE, UsedLevel4Entries, p4_index


def test_p4_index():
    assert p4_index(0) == 0
    assert p4_index(LEVEL_4_SIZE) == 1
    assert p4_index(0xFFFF_FFFF_FFFF_F000) == 511
    with pytest.raises(ValueError):
        p4_index(0x0000_8000_0000_0000)


def test_mark_range_and_first_free():
    used = UsedLevel4Entries()
    used.mark_range_as_used(0, 2 * LEVEL_4_SIZE)
    assert used.is_used(0) and used.is_used(1)
    assert not used.is_used(2)
    assert used.get_free_entries(1) == 2
    assert used.is_used(2)
    assert used.get_free_entries(3) == 3


def test_free_address_without_rng():
    used = UsedLevel4Entries()
    used.mark_p4_index_as_used(0)
    address = used.get_free_address(4096, 4096)
    assert p4_index(address) == 1
    assert address % LEVEL_4_SIZE == 0


def test_random_choice_is_free_and_aligned():
    used = UsedLevel4Entries(random.Random(7))
    used.mark_range_as_used(0, 10 * LEVEL_4_SIZE)
    address = used.get_free_address(0x20_0000, 0x20_0000)
    assert address % 0x20_0000 == 0
    assert p4_index(address) >= 10
    assert used.is_used(p4_index(address))


def test_exhaustion():
    used = UsedLevel4Entries()
    for index in range(512):
        used.mark_p4_index_as_used(index)
    with pytest.raises(MemoryError):
        used.get_free_entries(1)


def test_bad_alignment():
    with pytest.raises(ValueError):
        UsedLevel4Entries().get_free_address(4096, 3)


def test_restrict_dynamic_range():
    used = UsedLevel4Entries()
    used.restrict_dynamic_range(start=5 * LEVEL_4_SIZE, end=8 * LEVEL_4_SIZE - 1)
    assert all(used.is_used(i) for i in range(5))
    assert not any(used.is_used(i) for i in range(5, 8))
    assert all(used.is_used(i) for i in range(8, 512))
    assert used.get_free_entries(3) == 5