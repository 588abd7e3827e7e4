"""UEFI memory descriptors as regions of a firmware memory map."""

from __future__ import annotations

import enum
from dataclasses import dataclass

from bootimage.memory_map import LegacyMemoryRegion, MemoryRegionKind

PAGE_SIZE = 4096


class UefiMemoryType(enum.IntEnum):
    """Memory types defined by the UEFI specification."""

    RESERVED = 0
    LOADER_CODE = 1
    LOADER_DATA = 2
    BOOT_SERVICES_CODE = 3
    BOOT_SERVICES_DATA = 4
    RUNTIME_SERVICES_CODE = 5
    RUNTIME_SERVICES_DATA = 6
    CONVENTIONAL = 7
    UNUSABLE = 8
    ACPI_RECLAIM = 9
    ACPI_NON_VOLATILE = 10
    MMIO = 11
    MMIO_PORT_SPACE = 12
    PAL_CODE = 13
    PERSISTENT_MEMORY = 14


_FREED_ON_EXIT = frozenset(
    {
        UefiMemoryType.CONVENTIONAL,
        UefiMemoryType.LOADER_CODE,
        UefiMemoryType.LOADER_DATA,
        UefiMemoryType.BOOT_SERVICES_CODE,
        UefiMemoryType.BOOT_SERVICES_DATA,
    }
)


@dataclass(frozen=True)
class UefiMemoryDescriptor(LegacyMemoryRegion):
    """One entry of the UEFI memory map; ``ty`` may be any raw type code."""

    ty: int
    phys_start: int
    page_count: int
    virt_start: int = 0
    att: int = 0

    def start(self) -> int:
        return self.phys_start

    def length(self) -> int:
        return self.page_count * PAGE_SIZE

    def is_empty(self) -> bool:
        return self.page_count == 0

    def kind(self) -> MemoryRegionKind:
        if self.ty == UefiMemoryType.CONVENTIONAL:
            return MemoryRegionKind.usable()
        return MemoryRegionKind.unknown_uefi(int(self.ty))

    def usable_after_bootloader_exit(self) -> bool:
        # Loader and boot-services memory is no longer needed once the kernel
        # runs; runtime-services memory must be preserved.
        return self.ty in _FREED_ON_EXIT