import pytest

from bootimage.fat import (
    DEFAULT_VOLUME_LABEL,
    KERNEL_FILE_NAME,
    create_fat_filesystem,
    list_fat_files,
    read_fat_file,
    volume_label_for,
)
from bootimage.file_data_source import FileDataSource

MB = 1024 * 1024


def test_files_round_trip(tmp_path):
    image = tmp_path / "fat.img"
    files = {
        KERNEL_FILE_NAME: FileDataSource.from_data(b"kernel" * 1000),
        "boot.json": FileDataSource.from_data(b"{}"),
        "efi/boot/bootx64.efi": FileDataSource.from_data(bytes(range(256)) * 20),
        "empty": FileDataSource.from_data(b""),
    }
    create_fat_filesystem(files, image)
    assert list_fat_files(image) == sorted(files)
    for name, source in files.items():
        assert read_fat_file(image, name) == source.read_bytes()
    assert image.stat().st_size % MB == 0
    raw = image.read_bytes()
    assert raw[510:512] == b"\x55\xaa"
    assert raw[54:62] == b"FAT12   "


def test_case_insensitive_lookup(tmp_path):
    image = tmp_path / "fat.img"
    create_fat_filesystem({"boot-stage-3": FileDataSource.from_data(b"xyz")}, image)
    assert read_fat_file(image, "BOOT-STAGE-3") == b"xyz"
    with pytest.raises(FileNotFoundError):
        read_fat_file(image, "missing")


def test_fat16(tmp_path):
    image = tmp_path / "fat.img"
    data = bytes(range(251)) * (3 * MB // 251)
    create_fat_filesystem({"ramdisk": FileDataSource.from_data(data)}, image)
    assert image.read_bytes()[54:62] == b"FAT16   "
    assert read_fat_file(image, "ramdisk") == data


def test_label_from_kernel_stem(tmp_path):
    kernel = tmp_path / "my_kernel.elf"
    kernel.write_bytes(b"k")
    label = volume_label_for({KERNEL_FILE_NAME: FileDataSource.from_file(kernel)})
    assert label == b"my_kernel".ljust(11, b"\0")
    image = tmp_path / "fat.img"
    create_fat_filesystem({KERNEL_FILE_NAME: FileDataSource.from_file(kernel)}, image)
    assert image.read_bytes()[43:54] == label


def test_default_label():
    assert volume_label_for({KERNEL_FILE_NAME: FileDataSource.from_data(b"k")}) == DEFAULT_VOLUME_LABEL
    assert DEFAULT_VOLUME_LABEL == b"MY_RUST_OS!"


def test_file_over_directory_rejected(tmp_path):
    files = {"a": FileDataSource.from_data(b"1"), "a/b": FileDataSource.from_data(b"2")}
    with pytest.raises(NotADirectoryError):
        create_fat_filesystem(files, tmp_path / "fat.img")