"""Creation and inspection of MBR disk images for booting on BIOS systems."""

from __future__ import annotations

import os
import shutil
import struct
from dataclasses import dataclass
from typing import List

SECTOR_SIZE = 512
BOOT_ACTIVE = 0x80
# Partition type the boot sector looks for to find the second stage.
SECOND_STAGE_PARTITION_TYPE = 0x20
# FAT32 with LBA addressing.
FAT_PARTITION_TYPE = 0x0C

_TABLE_OFFSET = 446
_ENTRY = struct.Struct("<B3sB3sII")
_SIGNATURE = b"\x55\xaa"
_U32_MAX = 0xFFFF_FFFF
_EMPTY_CHS = b"\x00\x00\x00"


@dataclass(frozen=True)
class MbrPartitionEntry:
    """One of the four entries of an MBR partition table."""

    boot: int = 0
    first_chs: bytes = _EMPTY_CHS
    sys: int = 0
    last_chs: bytes = _EMPTY_CHS
    starting_lba: int = 0
    sectors: int = 0

    def is_unused(self) -> bool:
        """Whether the entry describes no partition."""
        return self.sys == 0

    def to_bytes(self) -> bytes:
        """The 16-byte on-disk representation."""
        return _ENTRY.pack(
            self.boot, self.first_chs, self.sys, self.last_chs, self.starting_lba, self.sectors
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> MbrPartitionEntry:
        """Parse a 16-byte on-disk entry."""
        if len(raw) != _ENTRY.size:
            raise ValueError(f"partition entry must be {_ENTRY.size} bytes, got {len(raw)}")
        return cls(*_ENTRY.unpack(raw))


def read_mbr_partitions(data: bytes) -> List[MbrPartitionEntry]:
    """Parse the four partition entries of the MBR at the start of ``data``."""
    if len(data) < SECTOR_SIZE:
        raise ValueError("failed to read MBR: data is shorter than one sector")
    if data[510:512] != _SIGNATURE:
        raise ValueError("failed to read MBR: invalid boot signature")
    return [
        MbrPartitionEntry.from_bytes(data[offset : offset + _ENTRY.size])
        for offset in range(_TABLE_OFFSET, _TABLE_OFFSET + 4 * _ENTRY.size, _ENTRY.size)
    ]


def _sector_count(size: int, what: str) -> int:
    if size == 0:
        raise ValueError(f"{what} is empty")
    sectors = (size - 1) // SECTOR_SIZE + 1
    if sectors > _U32_MAX:
        raise ValueError(f"size of {what} is larger than u32::MAX sectors")
    return sectors


def create_mbr_disk(
    bootsector_binary: bytes,
    second_stage_binary: bytes,
    boot_partition_path: str | os.PathLike,
    out_mbr_path: str | os.PathLike,
) -> None:
    """Write a BIOS disk: boot sector, second stage after it, then the FAT partition."""
    boot_sector = bytes(bootsector_binary)
    entries = read_mbr_partitions(boot_sector)
    for index, entry in enumerate(entries, start=1):
        if not entry.is_unused():
            raise ValueError(f"partition {index} should be unused")

    second_stage = bytes(second_stage_binary)
    second_stage_start = 1
    second_stage_sectors = _sector_count(len(second_stage), "second stage")
    entries[0] = MbrPartitionEntry(
        boot=BOOT_ACTIVE,
        sys=SECOND_STAGE_PARTITION_TYPE,
        starting_lba=second_stage_start,
        sectors=second_stage_sectors,
    )

    boot_partition_size = os.stat(boot_partition_path).st_size
    boot_partition_start = second_stage_start + second_stage_sectors
    if boot_partition_start * SECTOR_SIZE > _U32_MAX:
        raise ValueError("FAT partition start offset does not fit in 32 bits")
    entries[1] = MbrPartitionEntry(
        boot=BOOT_ACTIVE,
        sys=FAT_PARTITION_TYPE,
        starting_lba=boot_partition_start,
        sectors=_sector_count(boot_partition_size, "FAT partition"),
    )

    header = (
        boot_sector[:_TABLE_OFFSET]
        + b"".join(entry.to_bytes() for entry in entries)
        + _SIGNATURE
    )
    with open(boot_partition_path, "rb") as partition, open(out_mbr_path, "w+b") as disk:
        disk.write(header)
        disk.write(second_stage)
        disk.seek(boot_partition_start * SECTOR_SIZE)
        shutil.copyfileobj(partition, disk)