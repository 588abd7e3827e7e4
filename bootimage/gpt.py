"""Creation and inspection of GPT disk images holding one EFI system partition."""

from __future__ import annotations

import os
import shutil
import struct
import uuid
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import List

SECTOR = 512
EFI_SYSTEM_PARTITION = uuid.UUID("C12A7328-F81F-11D2-BA4B-00A0C93EC93B")
_NUM_ENTRIES = 128
_ENTRY_SIZE = 128
_ENTRY_SECTORS = _NUM_ENTRIES * _ENTRY_SIZE // SECTOR
_FIRST_USABLE = 2 + _ENTRY_SECTORS
_HEADER_FMT = "<8sIIIIQQQQ16sQIII"


@dataclass(frozen=True)
class GptPartition:
    """One used entry of a GPT partition table."""

    type_guid: uuid.UUID
    unique_guid: uuid.UUID
    first_lba: int
    last_lba: int
    name: str

    @property
    def bytes_start(self) -> int:
        return self.first_lba * SECTOR


def _protective_mbr(size_lba: int) -> bytes:
    mbr = bytearray(SECTOR)
    mbr[446:462] = struct.pack(
        "<B3sB3sII", 0, b"\x00\x02\x00", 0xEE, b"\xff\xff\xff", 1, size_lba
    )
    mbr[510:512] = b"\x55\xaa"
    return bytes(mbr)


def _header(current: int, backup: int, last_usable: int, disk_guid: bytes,
            entries_lba: int, entries_crc: int) -> bytes:
    fields = [b"EFI PART", 0x00010000, 92, 0, 0, current, backup, _FIRST_USABLE,
              last_usable, disk_guid, entries_lba, _NUM_ENTRIES, _ENTRY_SIZE, entries_crc]
    fields[3] = zlib.crc32(struct.pack(_HEADER_FMT, *fields))
    return struct.pack(_HEADER_FMT, *fields).ljust(SECTOR, b"\0")


def create_gpt_disk(fat_image: str | os.PathLike, out_gpt_path: str | os.PathLike) -> None:
    """Write a GPT disk whose single EFI system partition holds ``fat_image``."""
    partition_size = os.stat(fat_image).st_size
    disk_size = partition_size + 1024 * 64
    total_lbas = disk_size // SECTOR
    last_lba = total_lbas - 1
    last_usable = last_lba - _ENTRY_SECTORS - 1
    sectors = max(1, -(-partition_size // SECTOR))
    first = _FIRST_USABLE
    if first + sectors - 1 > last_usable:
        raise ValueError("partition does not fit on the GPT disk")

    entries = bytearray(_NUM_ENTRIES * _ENTRY_SIZE)
    entries[0:_ENTRY_SIZE] = struct.pack(
        "<16s16sQQQ72s",
        EFI_SYSTEM_PARTITION.bytes_le, uuid.uuid4().bytes_le,
        first, first + sectors - 1, 0, "boot".encode("utf-16-le"),
    )
    entries_crc = zlib.crc32(entries)
    disk_guid = uuid.uuid4().bytes_le
    backup_entries_lba = last_lba - _ENTRY_SECTORS

    with open(out_gpt_path, "w+b") as disk:
        disk.truncate(disk_size)
        disk.write(_protective_mbr(min(total_lbas - 1, 0xFFFFFFFF)))
        disk.write(_header(1, last_lba, last_usable, disk_guid, 2, entries_crc))
        disk.write(entries)
        disk.seek(backup_entries_lba * SECTOR)
        disk.write(entries)
        disk.write(_header(last_lba, 1, last_usable, disk_guid, backup_entries_lba, entries_crc))
        disk.seek(first * SECTOR)
        with open(fat_image, "rb") as fat:
            shutil.copyfileobj(fat, disk)


def read_gpt_partitions(disk_path: str | os.PathLike) -> List[GptPartition]:
    """Parse and verify the primary GPT and return its used partitions."""
    data = Path(disk_path).read_bytes()
    raw = data[SECTOR : SECTOR + 92]
    if len(raw) < 92:
        raise ValueError("disk too small for a GPT header")
    fields = list(struct.unpack(_HEADER_FMT, raw))
    if fields[0] != b"EFI PART":
        raise ValueError("missing GPT signature")
    stored_crc = fields[3]
    fields[3] = 0
    if zlib.crc32(struct.pack(_HEADER_FMT, *fields)) != stored_crc:
        raise ValueError("GPT header checksum mismatch")
    entries_lba, count, size, entries_crc = fields[10:14]
    start = entries_lba * SECTOR
    entries = data[start : start + count * size]
    if zlib.crc32(entries) != entries_crc:
        raise ValueError("GPT partition entries checksum mismatch")
    partitions = []
    for offset in range(0, len(entries), size):
        type_guid, guid, first, last, _attrs, name = struct.unpack_from("<16s16sQQQ72s", entries, offset)
        if type_guid == bytes(16):
            continue
        partitions.append(GptPartition(
            uuid.UUID(bytes_le=type_guid), uuid.UUID(bytes_le=guid), first, last,
            name.decode("utf-16-le").split("\x00", 1)[0],
        ))
    return partitions