"""A source of file contents: either a path on disk or bytes in memory."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional


@dataclass(frozen=True, repr=False)
class FileDataSource:
    """Contents to place in an image, read from a file or held in memory."""

    path: Optional[Path] = None
    data: Optional[bytes] = None

    def __post_init__(self) -> None:
        if (self.path is None) == (self.data is None):
            raise ValueError("exactly one of path and data must be given")

    @classmethod
    def from_file(cls, path: str | os.PathLike) -> FileDataSource:
        return cls(path=Path(path))

    @classmethod
    def from_data(cls, data: bytes) -> FileDataSource:
        return cls(data=bytes(data))

    def __repr__(self) -> str:
        if self.path is not None:
            return f"data source: File {self.path}"
        return f"data source: {len(self.data)} raw bytes "

    def length(self) -> int:
        """Number of bytes this source provides."""
        if self.path is not None:
            return os.stat(self.path).st_size
        return len(self.data)

    def copy_to(self, target: BinaryIO) -> None:
        """Write the contents to a writable binary stream."""
        if self.path is not None:
            with open(self.path, "rb") as source:
                shutil.copyfileobj(source, target)
        else:
            target.write(self.data)

    def read_bytes(self) -> bytes:
        """The whole contents."""
        if self.path is not None:
            return self.path.read_bytes()
        return self.data