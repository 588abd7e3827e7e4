"""Build bootable BIOS and UEFI disk images and compute bootloader memory layouts for x86_64 kernels."""

__version__ = "0.11.10"