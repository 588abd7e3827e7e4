"""Building bootable BIOS and UEFI disk images from a kernel and extra files."""

from __future__ import annotations

import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, Mapping, Optional

from bootimage.boot_config import BootConfig
from bootimage.fat import KERNEL_FILE_NAME, create_fat_filesystem
from bootimage.file_data_source import FileDataSource
from bootimage.gpt import create_gpt_disk
from bootimage.mbr import create_mbr_disk

RAMDISK_FILE_NAME = "ramdisk"
CONFIG_FILE_NAME = "boot.json"
BIOS_STAGE_3_NAME = "boot-stage-3"
BIOS_STAGE_4_NAME = "boot-stage-4"
UEFI_BOOT_FILENAME = "efi/boot/bootx64.efi"
UEFI_TFTP_BOOT_FILENAME = "bootloader"

_ENV_VARS = {
    "uefi_bootloader": "UEFI_BOOTLOADER_PATH",
    "bios_boot_sector": "BIOS_BOOT_SECTOR_PATH",
    "bios_stage_2": "BIOS_STAGE_2_PATH",
    "bios_stage_3": "BIOS_STAGE_3_PATH",
    "bios_stage_4": "BIOS_STAGE_4_PATH",
}


@dataclass(frozen=True)
class BootloaderBinaries:
    """The prebuilt bootloader stages placed into disk images."""

    uefi_bootloader: Optional[bytes] = None
    bios_boot_sector: Optional[bytes] = None
    bios_stage_2: Optional[bytes] = None
    bios_stage_3: Optional[bytes] = None
    bios_stage_4: Optional[bytes] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> BootloaderBinaries:
        """Load every binary whose path is given by its ``*_PATH`` environment variable."""
        env = os.environ if environ is None else environ
        loaded = {
            field: Path(env[var]).read_bytes()
            for field, var in _ENV_VARS.items()
            if env.get(var)
        }
        return cls(**loaded)

    def require(self, field: str) -> bytes:
        """The named binary; raises ValueError if it was not provided."""
        value = getattr(self, field)
        if value is None:
            raise ValueError(f"bootloader binary missing: set {_ENV_VARS[field]}")
        return value


class DiskImageBuilder:
    """Collects files and creates MBR (BIOS), GPT (UEFI) and TFTP (UEFI) images from them."""

    def __init__(
        self,
        kernel: Optional[str | os.PathLike] = None,
        binaries: Optional[BootloaderBinaries] = None,
    ) -> None:
        self._files: Dict[str, FileDataSource] = {}
        self._binaries = binaries if binaries is not None else BootloaderBinaries.from_env()
        if kernel is not None:
            self.set_kernel(kernel)

    def set_kernel(self, path: str | os.PathLike) -> DiskImageBuilder:
        """Add or replace the kernel."""
        self._files[KERNEL_FILE_NAME] = FileDataSource.from_file(path)
        return self

    def set_ramdisk(self, path: str | os.PathLike) -> DiskImageBuilder:
        """Add or replace the ramdisk."""
        self._files[RAMDISK_FILE_NAME] = FileDataSource.from_file(path)
        return self

    def set_boot_config(self, boot_config: BootConfig) -> DiskImageBuilder:
        """Store the runtime configuration as ``boot.json``."""
        data = boot_config.to_json().encode("utf-8")
        self._files[CONFIG_FILE_NAME] = FileDataSource.from_data(data)
        return self

    def set_file_contents(self, destination: str, data: bytes) -> DiskImageBuilder:
        """Add a file with the given bytes; the kernel has to load it itself."""
        self._files[destination] = FileDataSource.from_data(data)
        return self

    def set_file(self, destination: str, file_path: str | os.PathLike) -> DiskImageBuilder:
        """Add a file copied from disk; the kernel has to load it itself."""
        self._files[destination] = FileDataSource.from_file(file_path)
        return self

    @contextmanager
    def _fat_partition(self, internal_files: Mapping[str, FileDataSource]) -> Iterator[Path]:
        merged = dict(self._files)
        for name, source in internal_files.items():
            if name in merged:
                raise ValueError(f"Attempted to overwrite internal file: {name}")
            merged[name] = source
        handle, raw_path = tempfile.mkstemp(suffix=".fat")
        os.close(handle)
        path = Path(raw_path)
        try:
            create_fat_filesystem(merged, path)
            yield path
        finally:
            path.unlink(missing_ok=True)

    def create_bios_image(self, image_path: str | os.PathLike) -> None:
        """Create an MBR disk image for booting on BIOS systems."""
        binaries = self._binaries
        boot_sector = binaries.require("bios_boot_sector")
        stage_2 = binaries.require("bios_stage_2")
        internal = {
            BIOS_STAGE_3_NAME: FileDataSource.from_data(binaries.require("bios_stage_3")),
            BIOS_STAGE_4_NAME: FileDataSource.from_data(binaries.require("bios_stage_4")),
        }
        with self._fat_partition(internal) as fat_path:
            create_mbr_disk(boot_sector, stage_2, fat_path, image_path)

    def create_uefi_image(self, image_path: str | os.PathLike) -> None:
        """Create a GPT disk image for booting on UEFI systems."""
        bootloader = self._binaries.require("uefi_bootloader")
        internal = {UEFI_BOOT_FILENAME: FileDataSource.from_data(bootloader)}
        with self._fat_partition(internal) as fat_path:
            create_gpt_disk(fat_path, image_path)

    def create_uefi_tftp_folder(self, tftp_path: str | os.PathLike) -> None:
        """Create a folder with the files needed for UEFI TFTP/PXE booting."""
        bootloader = self._binaries.require("uefi_bootloader")
        folder = Path(tftp_path)
        folder.mkdir(parents=True, exist_ok=True)
        (folder / UEFI_TFTP_BOOT_FILENAME).write_bytes(bootloader)
        for name, source in sorted(self._files.items()):
            with open(folder / name, "wb") as target:
                source.copy_to(target)


class BiosBoot:
    """Creates disk images for booting on legacy BIOS systems."""

    def __init__(
        self, kernel_path: str | os.PathLike, binaries: Optional[BootloaderBinaries] = None
    ) -> None:
        self._builder = DiskImageBuilder(kernel_path, binaries)

    def set_ramdisk(self, ramdisk_path: str | os.PathLike) -> BiosBoot:
        """Add a ramdisk file to the image."""
        self._builder.set_ramdisk(ramdisk_path)
        return self

    def set_boot_config(self, config: BootConfig) -> BiosBoot:
        """Add a ``boot.json`` that configures the bootloader at runtime."""
        self._builder.set_boot_config(config)
        return self

    def create_disk_image(self, out_path: str | os.PathLike) -> None:
        """Create a bootable BIOS disk image at ``out_path``."""
        self._builder.create_bios_image(out_path)


class UefiBoot:
    """Creates disk images for booting on UEFI systems."""

    def __init__(
        self, kernel_path: str | os.PathLike, binaries: Optional[BootloaderBinaries] = None
    ) -> None:
        self._builder = DiskImageBuilder(kernel_path, binaries)

    def set_ramdisk(self, ramdisk_path: str | os.PathLike) -> UefiBoot:
        """Add a ramdisk file to the image."""
        self._builder.set_ramdisk(ramdisk_path)
        return self

    def set_boot_config(self, config: BootConfig) -> UefiBoot:
        """Add a ``boot.json`` that configures the bootloader at runtime."""
        self._builder.set_boot_config(config)
        return self

    def create_disk_image(self, out_path: str | os.PathLike) -> None:
        """Create a bootable UEFI disk image at ``out_path``."""
        self._builder.create_uefi_image(out_path)

    def create_pxe_tftp_folder(self, out_path: str | os.PathLike) -> None:
        """Prepare a folder for PXE booting; the bootloader is stored as ``bootloader``."""
        self._builder.create_uefi_tftp_folder(out_path)