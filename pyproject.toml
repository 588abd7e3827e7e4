[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "bootimage"
version = "0.11.10"
description = "Build bootable BIOS (MBR) and UEFI (GPT) disk images for x86_64 kernels, plus bootloader memory-map helpers."
requires-python = ">=3.10"
dependencies = []
keywords = ["bootloader", "disk-image", "uefi", "bios", "mbr", "gpt", "fat", "x86_64"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Boot",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["bootimage"]

[tool.pytest.ini_options]
addopts = "-ra"
