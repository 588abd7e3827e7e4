import io

import pytest

from bootimage.file_data_source import FileDataSource


def test_data_source():
    source = FileDataSource.from_data(b"abc")
    assert source.length() == 3
    buffer = io.BytesIO()
    source.copy_to(buffer)
    assert buffer.getvalue() == b"abc"
    assert repr(source) == "data source: 3 raw bytes "


def test_file_source(tmp_path):
    path = tmp_path / "kernel"
    path.write_bytes(b"\x01\x02\x03\x04")
    source = FileDataSource.from_file(path)
    assert source.length() == 4
    assert source.read_bytes() == b"\x01\x02\x03\x04"
    buffer = io.BytesIO()
    source.copy_to(buffer)
    assert buffer.getvalue() == path.read_bytes()
    assert repr(source) == f"data source: File {path}"


def test_missing_file(tmp_path):
    source = FileDataSource.from_file(tmp_path / "nope")
    with pytest.raises(FileNotFoundError):
        source.length()


def test_needs_exactly_one():
    with pytest.raises(ValueError):
        FileDataSource()