"""Creation and inspection of FAT12/16/32 filesystem images."""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from bootimage.file_data_source import FileDataSource

KERNEL_FILE_NAME = "kernel-x86_64"
DEFAULT_VOLUME_LABEL = b"MY_RUST_OS!"

SECTOR = 512
MB = 1024 * 1024
_VOLUME_ID = 0x12345678
_DATE = (1 << 5) | 1  # 1980-01-01
_ATTR_DIR = 0x10
_ATTR_ARCHIVE = 0x20
_ATTR_VOLUME = 0x08
_ATTR_LFN = 0x0F
_SHORT_CHARS = set("ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789!#$%&'()-@^_`{}~")
_EOC = {12: 0xFFF, 16: 0xFFFF, 32: 0x0FFFFFFF}
_MEDIA = {12: 0xFF8, 16: 0xFFF8, 32: 0x0FFFFFF8}
_CLUSTER_RANGE = {12: (1, 4084), 16: (4085, 65524), 32: (65525, 0x0FFFFFF4)}


@dataclass
class _Layout:
    bits: int
    spc: int
    reserved: int
    root_sectors: int
    fat_sectors: int
    total: int
    clusters: int

    @property
    def data_start(self) -> int:
        return self.reserved + 2 * self.fat_sectors + self.root_sectors

    @property
    def cluster_bytes(self) -> int:
        return self.spc * SECTOR

    def cluster_offset(self, cluster: int) -> int:
        return (self.data_start + (cluster - 2) * self.spc) * SECTOR


def _layout(total: int, spc: int, bits: int) -> Optional[_Layout]:
    reserved = 32 if bits == 32 else 1
    root_sectors = 0 if bits == 32 else 32
    fat_sectors = 1
    while True:
        clusters = (total - reserved - root_sectors - 2 * fat_sectors) // spc
        if clusters <= 0:
            return None
        need = -(-(((clusters + 2) * bits + 7) // 8) // SECTOR)
        if need <= fat_sectors:
            return _Layout(bits, spc, reserved, root_sectors, fat_sectors, total, clusters)
        fat_sectors = need


def _choose_layout(total: int) -> _Layout:
    spc = 1
    while spc <= 128:
        for bits in (12, 16, 32):
            layout = _layout(total, spc, bits)
            if layout is not None:
                low, high = _CLUSTER_RANGE[bits]
                if low <= layout.clusters <= high:
                    return layout
        spc *= 2
    raise ValueError(f"cannot format a FAT volume of {total} sectors")


@dataclass
class _File:
    name: str
    source: FileDataSource
    short: bytes = b""
    lfn: bool = False
    cluster: int = 0
    data: bytes = b""


@dataclass
class _Dir:
    name: str
    children: Dict[str, Union["_Dir", _File]] = field(default_factory=dict)
    short: bytes = b""
    lfn: bool = False
    cluster: int = 0


def _split_name(name: str) -> Tuple[str, str]:
    upper = name.upper()
    if "." in upper.lstrip("."):
        base, ext = upper.rsplit(".", 1)
    else:
        base, ext = upper, ""
    return base, ext


def _clean(part: str) -> str:
    return "".join(c if c in _SHORT_CHARS else "_" for c in part if c not in " .")


def _short_name(name: str, taken: set) -> Tuple[bytes, bool]:
    base, ext = _split_name(name)
    clean_base, clean_ext = _clean(base), _clean(ext)
    exact = clean_base == base and clean_ext == ext and 0 < len(base) <= 8 and len(ext) <= 3
    if exact:
        candidate = (clean_base.ljust(8) + clean_ext.ljust(3)).encode("ascii")
        if candidate not in taken:
            return candidate, name != base + ("." + ext if ext else "")
    clean_base = clean_base or "_"
    number = 1
    while True:
        tail = f"~{number}"
        candidate = (clean_base[: 8 - len(tail)] + tail).ljust(8) + clean_ext[:3].ljust(3)
        encoded = candidate.encode("ascii")
        if encoded not in taken:
            return encoded, True
        number += 1


def _checksum(short: bytes) -> int:
    total = 0
    for byte in short:
        total = (((total & 1) << 7) + (total >> 1) + byte) & 0xFF
    return total


def _lfn_count(name: str) -> int:
    return -(-len(name.encode("utf-16-le")) // 26)


def _lfn_entries(name: str, short: bytes) -> bytes:
    raw = name.encode("utf-16-le")
    units = [raw[i : i + 2] for i in range(0, len(raw), 2)]
    if len(units) > 255:
        raise ValueError(f"file name too long: {name!r}")
    pad = -len(units) % 13
    if pad:
        units += [b"\0\0"] + [b"\xff\xff"] * (pad - 1)
    count = len(units) // 13
    checksum = _checksum(short)
    out = bytearray()
    for seq in range(count, 0, -1):
        chunk = units[(seq - 1) * 13 : seq * 13]
        entry = bytearray(32)
        entry[0] = seq | (0x40 if seq == count else 0)
        entry[1:11] = b"".join(chunk[0:5])
        entry[11] = _ATTR_LFN
        entry[13] = checksum
        entry[14:26] = b"".join(chunk[5:11])
        entry[28:32] = b"".join(chunk[11:13])
        out += entry
    return bytes(out)


def _short_entry(short: bytes, attr: int, cluster: int, size: int) -> bytes:
    return struct.pack(
        "<11sBBBHHHHHHHI",
        short, attr, 0, 0, 0, _DATE, _DATE, cluster >> 16, 0, _DATE, cluster & 0xFFFF, size,
    )


def _entry_count(node: Union[_Dir, _File]) -> int:
    return 1 + (_lfn_count(node.name) if node.lfn else 0)


def volume_label_for(files: Mapping[str, FileDataSource]) -> bytes:
    """The 11-byte volume label: the kernel file's stem if it is a file, else a default."""
    kernel = files.get(KERNEL_FILE_NAME)
    if kernel is not None and kernel.path is not None:
        stem = Path(kernel.path).stem
        if stem:
            name = stem.encode("utf-8", errors="replace")[:11]
            return name.ljust(11, b"\0")
    return DEFAULT_VOLUME_LABEL


def _build_tree(files: Mapping[str, FileDataSource]) -> _Dir:
    root = _Dir("")
    for target, source in sorted(files.items()):
        parts = [p for p in target.split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise ValueError(f"invalid target path: {target!r}")
        node = root
        for part in parts[:-1]:
            child = node.children.get(part.casefold())
            if child is None:
                child = _Dir(part)
                node.children[part.casefold()] = child
            elif not isinstance(child, _Dir):
                raise NotADirectoryError(f"failed to create directory `{part}` on FAT filesystem")
            node = child
        existing = node.children.get(parts[-1].casefold())
        if isinstance(existing, _Dir):
            raise IsADirectoryError(f"failed to create file at `{target}`")
        node.children[parts[-1].casefold()] = _File(parts[-1], source)
    return root


def _assign_short_names(node: _Dir) -> None:
    taken: set = set()
    for child in node.children.values():
        child.short, child.lfn = _short_name(child.name, taken)
        taken.add(child.short)
        if isinstance(child, _Dir):
            _assign_short_names(child)


def _dir_bytes(node: _Dir) -> int:
    return 64 + 32 * sum(_entry_count(c) for c in node.children.values())


def _allocate(node: _Dir, alloc: Callable[[int], int]) -> None:
    for child in node.children.values():
        if isinstance(child, _Dir):
            child.cluster = alloc(_dir_bytes(child))
            _allocate(child, alloc)
        else:
            child.data = child.source.read_bytes()
            child.cluster = alloc(len(child.data)) if child.data else 0


def _encode_dir(node: _Dir, self_cluster: int, parent_cluster: int, label: Optional[bytes]) -> bytes:
    out = bytearray()
    if label is not None:
        if label[:1] != b"\0":
            out += _short_entry(label, _ATTR_VOLUME, 0, 0)
    else:
        out += _short_entry(b".          ", _ATTR_DIR, self_cluster, 0)
        out += _short_entry(b"..         ", _ATTR_DIR, parent_cluster, 0)
    for child in node.children.values():
        if child.lfn:
            out += _lfn_entries(child.name, child.short)
        if isinstance(child, _Dir):
            out += _short_entry(child.short, _ATTR_DIR, child.cluster, 0)
        else:
            out += _short_entry(child.short, _ATTR_ARCHIVE, child.cluster, len(child.data))
    return bytes(out)


def _encode_fat(layout: _Layout, entries: List[int]) -> bytes:
    table = bytearray(layout.fat_sectors * SECTOR)
    if layout.bits == 12:
        for n, value in enumerate(entries):
            offset = n * 3 // 2
            if n % 2 == 0:
                table[offset] = value & 0xFF
                table[offset + 1] = (table[offset + 1] & 0xF0) | ((value >> 8) & 0x0F)
            else:
                table[offset] = (table[offset] & 0x0F) | ((value & 0x0F) << 4)
                table[offset + 1] = (value >> 4) & 0xFF
    else:
        fmt = "<H" if layout.bits == 16 else "<I"
        width = layout.bits // 8
        for n, value in enumerate(entries):
            struct.pack_into(fmt, table, n * width, value)
    return bytes(table)


def _boot_sector(layout: _Layout, label: bytes) -> bytes:
    sector = bytearray(SECTOR)
    sector[0:3] = b"\xeb\x58\x90" if layout.bits == 32 else b"\xeb\x3c\x90"
    sector[3:11] = b"MSWIN4.1"
    total16 = layout.total if layout.total < 0x10000 else 0
    total32 = 0 if total16 else layout.total
    struct.pack_into(
        "<HBHBHHBHHHII", sector, 11,
        SECTOR, layout.spc, layout.reserved, 2,
        0 if layout.bits == 32 else 512, total16, 0xF8,
        0 if layout.bits == 32 else layout.fat_sectors, 32, 64, 0, total32,
    )
    if layout.bits == 32:
        struct.pack_into("<IHHIHH", sector, 36, layout.fat_sectors, 0, 0, 2, 1, 6)
        struct.pack_into("<BBBI11s8s", sector, 64, 0x80, 0, 0x29, _VOLUME_ID, label, b"FAT32   ")
    else:
        kind = b"FAT12   " if layout.bits == 12 else b"FAT16   "
        struct.pack_into("<BBBI11s8s", sector, 36, 0x80, 0, 0x29, _VOLUME_ID, label, kind)
    sector[510:512] = b"\x55\xaa"
    return bytes(sector)


def _fs_info(free: int, next_free: int) -> bytes:
    sector = bytearray(SECTOR)
    struct.pack_into("<I", sector, 0, 0x41615252)
    struct.pack_into("<IIII", sector, 484, 0x61417272, free, next_free, 0)
    struct.pack_into("<I", sector, 508, 0xAA550000)
    return bytes(sector)


def create_fat_filesystem(files: Mapping[str, FileDataSource], out_fat_path: str | os.PathLike) -> None:
    """Format a FAT image sized for ``files`` and copy them into it."""
    needed = sum(source.length() for source in files.values())
    size = ((needed + 1024 * 64 - 1) // MB + 1) * MB + MB
    label = volume_label_for(files)
    layout = _choose_layout(size // SECTOR)

    root = _build_tree(files)
    _assign_short_names(root)
    fat = [0] * (layout.clusters + 2)
    fat[0], fat[1] = _MEDIA[layout.bits], _EOC[layout.bits]
    next_cluster = 2

    def alloc(nbytes: int) -> int:
        nonlocal next_cluster
        count = max(1, -(-nbytes // layout.cluster_bytes))
        start = next_cluster
        if start + count > layout.clusters + 2:
            raise OSError("FAT filesystem is full")
        for cluster in range(start, start + count - 1):
            fat[cluster] = cluster + 1
        fat[start + count - 1] = _EOC[layout.bits]
        next_cluster += count
        return start

    root_bytes = _dir_bytes(root) - 64 + 32
    if layout.bits == 32:
        root.cluster = alloc(root_bytes)
    elif root_bytes > layout.root_sectors * SECTOR:
        raise OSError("too many entries in FAT root directory")
    _allocate(root, alloc)

    with open(out_fat_path, "w+b") as out:
        out.truncate(size)
        out.write(_boot_sector(layout, label))
        if layout.bits == 32:
            info = _fs_info(layout.clusters + 2 - next_cluster, next_cluster)
            out.seek(SECTOR)
            out.write(info)
            out.seek(6 * SECTOR)
            out.write(_boot_sector(layout, label))
            out.write(info)
        table = _encode_fat(layout, fat)
        out.seek(layout.reserved * SECTOR)
        out.write(table)
        out.write(table)
        root_data = _encode_dir(root, 0, 0, label)
        if layout.bits == 32:
            out.seek(layout.cluster_offset(root.cluster))
        else:
            out.seek((layout.reserved + 2 * layout.fat_sectors) * SECTOR)
        out.write(root_data)
        _write_tree(out, layout, root, 0)


def _write_tree(out: BinaryIO, layout: _Layout, node: _Dir, node_cluster: int) -> None:
    for child in node.children.values():
        if isinstance(child, _Dir):
            out.seek(layout.cluster_offset(child.cluster))
            out.write(_encode_dir(child, child.cluster, node_cluster, None))
            _write_tree(out, layout, child, child.cluster)
        elif child.data:
            out.seek(layout.cluster_offset(child.cluster))
            out.write(child.data)


class _FatReader:
    def __init__(self, image: bytes) -> None:
        self.image = image
        boot = image[:SECTOR]
        if boot[510:512] != b"\x55\xaa":
            raise ValueError("not a FAT volume: missing boot signature")
        bps, spc, reserved, nfats, root_entries, total16, _media, fat16 = struct.unpack_from(
            "<HBHBHHBH", boot, 11
        )
        (total32,) = struct.unpack_from("<I", boot, 32)
        fat_size = fat16 or struct.unpack_from("<I", boot, 36)[0]
        self.bps, self.spc = bps, spc
        root_sectors = -(-(root_entries * 32) // bps)
        total = total16 or total32
        self.root_start = (reserved + nfats * fat_size) * bps
        self.root_size = root_sectors * bps
        self.data_start = reserved + nfats * fat_size + root_sectors
        clusters = (total - self.data_start) // spc
        self.bits = 12 if clusters < 4085 else 16 if clusters < 65525 else 32
        self.root_cluster = struct.unpack_from("<I", boot, 44)[0] if self.bits == 32 else 0
        self.fat = image[reserved * bps : (reserved + fat_size) * bps]

    def _next(self, cluster: int) -> int:
        if self.bits == 12:
            offset = cluster * 3 // 2
            (word,) = struct.unpack_from("<H", self.fat, offset)
            return word >> 4 if cluster % 2 else word & 0xFFF
        if self.bits == 16:
            return struct.unpack_from("<H", self.fat, cluster * 2)[0]
        return struct.unpack_from("<I", self.fat, cluster * 4)[0] & 0x0FFFFFFF

    def chain(self, cluster: int) -> bytes:
        out = bytearray()
        end = _MEDIA[self.bits]
        seen = set()
        while cluster < end:
            if cluster < 2 or cluster in seen:
                raise ValueError(f"corrupt cluster chain at {cluster}")
            seen.add(cluster)
            offset = (self.data_start + (cluster - 2) * self.spc) * self.bps
            out += self.image[offset : offset + self.spc * self.bps]
            cluster = self._next(cluster)
        return bytes(out)

    def directory(self, cluster: int) -> Iterator[Tuple[str, int, int, int]]:
        if cluster == 0 and self.bits != 32:
            raw = self.image[self.root_start : self.root_start + self.root_size]
        else:
            raw = self.chain(cluster or self.root_cluster)
        parts: Dict[int, bytes] = {}
        for offset in range(0, len(raw), 32):
            entry = raw[offset : offset + 32]
            if entry[0] == 0:
                return
            if entry[0] == 0xE5:
                parts = {}
                continue
            attr = entry[11]
            if attr == _ATTR_LFN:
                parts[entry[0] & 0x1F] = entry[1:11] + entry[14:26] + entry[28:32]
                continue
            if attr & _ATTR_VOLUME:
                parts = {}
                continue
            if parts:
                joined = b"".join(parts[k] for k in sorted(parts))
                name = joined.decode("utf-16-le", errors="replace").split("\x00", 1)[0]
            else:
                short = bytearray(entry[:11])
                if short[0] == 0x05:
                    short[0] = 0xE5
                base = short[:8].decode("latin-1").rstrip()
                ext = short[8:].decode("latin-1").rstrip()
                name = base + ("." + ext if ext else "")
            parts = {}
            if name in (".", ".."):
                continue
            hi, lo, size = struct.unpack_from("<H", entry, 20)[0], *struct.unpack_from("<HI", entry, 26)
            yield name, attr, (hi << 16) | lo, size


def _open_reader(image_path: str | os.PathLike) -> _FatReader:
    return _FatReader(Path(image_path).read_bytes())


def read_fat_file(image_path: str | os.PathLike, path: str) -> bytes:
    """Return the contents of the file at ``path`` (``/``-separated, case-insensitive)."""
    reader = _open_reader(image_path)
    parts = [p for p in path.split("/") if p]
    cluster, is_dir = 0, True
    size = 0
    for part in parts:
        if not is_dir:
            raise NotADirectoryError(path)
        for name, attr, child, child_size in reader.directory(cluster):
            if name.casefold() == part.casefold():
                cluster, is_dir, size = child, bool(attr & _ATTR_DIR), child_size
                break
        else:
            raise FileNotFoundError(path)
    if is_dir:
        raise IsADirectoryError(path)
    return reader.chain(cluster)[:size] if size else b""


def list_fat_files(image_path: str | os.PathLike) -> List[str]:
    """Sorted ``/``-separated paths of all files in the image."""
    reader = _open_reader(image_path)

    def walk(cluster: int, prefix: str) -> Iterator[str]:
        for name, attr, child, _size in reader.directory(cluster):
            if attr & _ATTR_DIR:
                yield from walk(child, prefix + name + "/")
            else:
                yield prefix + name

    return sorted(walk(0, ""))