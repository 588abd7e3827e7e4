# bootimage

A library for building bootable disk images for x86_64 kernels, and for
working out the memory layout a bootloader hands over to a kernel.

## What it does

- **Disk images** (`bootimage.builder`): `DiskImageBuilder` collects a kernel,
  an optional ramdisk, a `boot.json` configuration and any extra files, then
  writes:
  - a BIOS image with an MBR partition table (`create_bios_image`),
  - a UEFI image with a GPT partition table (`create_uefi_image`),
  - a folder for UEFI PXE/TFTP network boot (`create_uefi_tftp_folder`),
    holding the UEFI bootloader as `bootloader` next to the collected files.

  `BiosBoot` and `UefiBoot` wrap the builder for the common cases. The builder
  methods return the builder, so calls can be chained. Adding a file under a
  name the bootloader itself uses (such as `boot-stage-3` or
  `efi/boot/bootx64.efi`) raises `ValueError` when an image is created.
- **Boot configuration** (`bootimage.boot_config`): `BootConfig`, `FrameBuffer`
  and `LevelFilter` describe the runtime settings stored in `boot.json`.
  `BootConfig.to_json` / `from_json` and `to_dict` / `from_dict` convert them;
  missing fields take their defaults and malformed values raise `ValueError`.
- **File sources** (`bootimage.file_data_source`): `FileDataSource` holds file
  contents either as a path on disk or as bytes in memory.
- **FAT, GPT and MBR** (`bootimage.fat`, `bootimage.gpt`, `bootimage.mbr`):
  `create_fat_filesystem`, `create_gpt_disk` and `create_mbr_disk` build the
  individual pieces. `list_fat_files`, `read_fat_file`, `read_gpt_partitions`
  and `read_mbr_partitions` read them back. The FAT volume label is taken from
  the kernel file's name (`volume_label_for`).
- **Raw boot image** (`bootimage.disk_image`): `create_disk_image` converts a
  bootloader ELF executable to a 512-byte boot sector with `llvm-objcopy`,
  appends the kernel and pads the result to whole 512-byte blocks
  (`pad_to_nearest_block_size`). It also writes a FAT image holding the kernel
  next to the output, with a `.fat` suffix. `llvm-objcopy` must be on the
  search path; failures raise `DiskImageError` or one of its subclasses
  `LlvmObjcopyNotFoundError`, `ObjcopyFailedError` and `DiskImageIOError`.
- **Memory maps** (`bootimage.memory_map`, `bootimage.uefi_memory`):
  `LegacyFrameAllocator` hands out 4 KiB physical frames above 1 MiB from a
  firmware memory map and builds the final memory map for the kernel
  (`construct_memory_map`), with regions used by the bootloader, the kernel
  and the ramdisk marked as bootloader memory. `UefiMemoryDescriptor` and
  `UefiMemoryType` adapt UEFI memory descriptors; other firmware maps can be
  used by subclassing `LegacyMemoryRegion`.
- **Virtual address space** (`bootimage.level4`): `UsedLevel4Entries` tracks
  which of the 512 level 4 page table entries are taken and finds free ones,
  at random when given a `random.Random`.

## Installing

```
pip install .
```

The package needs nothing beyond the Python standard library.
`create_disk_image` additionally needs the `llvm-objcopy` program.

## Bootloader binaries

The builder places prebuilt bootloader stages into the image. They are given
through `BootloaderBinaries`, either directly as bytes or read by
`BootloaderBinaries.from_env()` from the files named in these environment
variables:

- `UEFI_BOOTLOADER_PATH`
- `BIOS_BOOT_SECTOR_PATH`
- `BIOS_STAGE_2_PATH`
- `BIOS_STAGE_3_PATH`
- `BIOS_STAGE_4_PATH`

Creating an image whose binaries are missing raises `ValueError`.

## Example

```python
from pathlib import Path

from bootimage.boot_config import BootConfig, LevelFilter
from bootimage.builder import BootloaderBinaries, DiskImageBuilder

binaries = BootloaderBinaries.from_env()
builder = DiskImageBuilder(Path("target/kernel"), binaries)
builder.set_ramdisk(Path("target/ramdisk.img"))

config = BootConfig()
config.log_level = LevelFilter.INFO
builder.set_boot_config(config)

builder.create_uefi_image(Path("out/uefi.img"))
builder.create_bios_image(Path("out/bios.img"))
builder.create_uefi_tftp_folder(Path("out/tftp"))
```

The bootloader reads only the kernel, the ramdisk and `boot.json` on boot;
any other files added with `set_file` or `set_file_contents` are for the
kernel to load itself.

## What it does not do

- There is no command-line program; everything is used from Python.
- It does not build the bootloader stages themselves; they must be supplied
  as ready binaries.
- It does not load or start a kernel. The memory-map and level 4 helpers
  compute layouts only; they map no pages and touch no hardware.

## Running the tests

```
pip install ".[test]"
pytest
```