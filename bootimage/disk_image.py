"""Assembling a raw boot image from a bootloader executable and a kernel."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

from bootimage.fat import KERNEL_FILE_NAME, create_fat_filesystem
from bootimage.file_data_source import FileDataSource

BLOCK_SIZE = 512
MB = 1024 * 1024
_PARTITION_HEADER = bytes([0x80, 0, 0, 0, 0x04, 0, 0, 0])
_U32_MAX = 0xFFFF_FFFF


class DiskImageError(Exception):
    """Creating the disk image failed."""


class LlvmObjcopyNotFoundError(DiskImageError):
    """The ``llvm-objcopy`` executable could not be found."""

    def __init__(self) -> None:
        super().__init__("Could not find `llvm-objcopy` on the search path.")


class ObjcopyFailedError(DiskImageError):
    """``llvm-objcopy`` exited with an error."""

    def __init__(self, stderr: bytes) -> None:
        self.stderr = stderr
        super().__init__(
            f"Failed to run `llvm-objcopy`: {stderr.decode('utf-8', errors='replace')}"
        )


class DiskImageIOError(DiskImageError):
    """An unexpected I/O error occurred."""

    def __init__(self, message: str, error: OSError) -> None:
        self.message = message
        self.error = error
        super().__init__(f"I/O error: {message}:\n{error}")


def _objcopy_to_binary(elf_path: Path, out_path: Path) -> None:
    objcopy = shutil.which("llvm-objcopy")
    if objcopy is None:
        raise LlvmObjcopyNotFoundError()
    command = [
        objcopy,
        "-I", "elf64-x86-64",
        "-O", "binary",
        "--binary-architecture=i386:x86-64",
        str(elf_path),
        str(out_path),
    ]
    try:
        result = subprocess.run(command, capture_output=True)
    except OSError as err:
        raise DiskImageIOError("failed to execute llvm-objcopy command", err) from err
    if result.returncode != 0:
        raise ObjcopyFailedError(result.stderr or b"")


def create_disk_image(
    bootloader_elf_path: str | os.PathLike,
    output_bin_path: str | os.PathLike,
    kernel_binary: str | os.PathLike,
) -> None:
    """Create a bootable disk image from a bootloader executable and a kernel binary.

    A FAT image holding the kernel is also written next to the output with a
    ``.fat`` suffix.
    """
    output = Path(output_bin_path)
    kernel = Path(kernel_binary)
    _objcopy_to_binary(Path(bootloader_elf_path), output)

    try:
        image_size = os.stat(output).st_size
    except OSError as err:
        raise DiskImageIOError("failed to get size of boot image", err) from err
    if image_size != BLOCK_SIZE:
        raise DiskImageError(
            f"boot image must be exactly {BLOCK_SIZE} bytes, got {image_size}"
        )

    kernel_size = os.stat(kernel).st_size
    fat_size = ((kernel_size + 1024 * 64 - 1) // MB + 1) * MB
    create_fat_filesystem(
        {KERNEL_FILE_NAME: FileDataSource.from_file(kernel)}, output.with_suffix(".fat")
    )

    size_sectors = fat_size // BLOCK_SIZE
    if size_sectors > _U32_MAX:
        raise DiskImageError("FAT partition is larger than u32::MAX sectors")

    try:
        image = open(output, "r+b")
    except OSError as err:
        raise DiskImageIOError("failed to open boot image", err) from err
    with image, open(kernel, "rb") as source:
        image.seek(446)
        image.write(_PARTITION_HEADER)
        image.write((1).to_bytes(4, "little"))
        image.write(size_sectors.to_bytes(4, "little"))
        image.seek(BLOCK_SIZE)
        shutil.copyfileobj(source, image)

    pad_to_nearest_block_size(output)


def pad_to_nearest_block_size(output_bin_path: str | os.PathLike) -> None:
    """Extend the file with zeros to a multiple of the 512-byte block size."""
    try:
        handle = open(output_bin_path, "r+b")
    except OSError as err:
        raise DiskImageIOError("failed to open boot image", err) from err
    with handle:
        try:
            size = os.fstat(handle.fileno()).st_size
        except OSError as err:
            raise DiskImageIOError("failed to get size of boot image", err) from err
        padding = -size % BLOCK_SIZE
        try:
            handle.truncate(size + padding)
        except OSError as err:
            raise DiskImageIOError(
                "failed to pad boot image to a multiple of the block size", err
            ) from err