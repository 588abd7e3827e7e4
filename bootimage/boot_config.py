"""Runtime boot configuration stored as a JSON file on the boot medium."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

_U64_MAX = 2**64 - 1


class LevelFilter(enum.IntEnum):
    """Verbosity filter of the boot logger, ordered from quiet to verbose."""

    OFF = 0
    ERROR = 1
    WARN = 2
    INFO = 3
    DEBUG = 4
    TRACE = 5

    @property
    def label(self) -> str:
        """The name used in the JSON representation."""
        return self.name.capitalize()

    @classmethod
    def from_label(cls, text: str) -> LevelFilter:
        """Parse the JSON name of a level (case-sensitive)."""
        for member in cls:
            if member.label == text:
                return member
        raise ValueError(f"unknown log level: {text!r}")


def _optional_u64(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    return _u64(value, name)


def _u64(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= _U64_MAX:
        raise ValueError(f"{name} must be an unsigned 64-bit integer, got {value!r}")
    return value


def _bool(value: Any, name: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{name} must be a boolean, got {value!r}")
    return value


@dataclass
class FrameBuffer:
    """Preferred minimum resolution of the framebuffer."""

    minimum_framebuffer_height: Optional[int] = None
    minimum_framebuffer_width: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "minimum_framebuffer_height": self.minimum_framebuffer_height,
            "minimum_framebuffer_width": self.minimum_framebuffer_width,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FrameBuffer:
        if not isinstance(data, Mapping):
            raise ValueError("frame_buffer must be an object")
        return cls(
            _optional_u64(data.get("minimum_framebuffer_height"), "minimum_framebuffer_height"),
            _optional_u64(data.get("minimum_framebuffer_width"), "minimum_framebuffer_width"),
        )


@dataclass
class BootConfig:
    """Configures the boot behaviour of the bootloader."""

    frame_buffer: FrameBuffer = field(default_factory=FrameBuffer)
    log_level: LevelFilter = LevelFilter.TRACE
    frame_buffer_logging: bool = True
    serial_logging: bool = True
    test_sentinel: int = 0

    def to_dict(self) -> dict:
        """The JSON-compatible representation."""
        return {
            "frame_buffer": self.frame_buffer.to_dict(),
            "log_level": self.log_level.label,
            "frame_buffer_logging": self.frame_buffer_logging,
            "serial_logging": self.serial_logging,
            "_test_sentinel": self.test_sentinel,
        }

    def to_json(self) -> str:
        """Pretty-printed JSON text."""
        return json.dumps(self.to_dict(), indent=2)

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> BootConfig:
        """Build a config; missing fields take their defaults, unknown ones are ignored."""
        if not isinstance(data, Mapping):
            raise ValueError("boot config must be a JSON object")
        config = BootConfig()
        if "frame_buffer" in data:
            config.frame_buffer = FrameBuffer.from_dict(data["frame_buffer"])
        if "log_level" in data:
            level = data["log_level"]
            if not isinstance(level, str):
                raise ValueError("log_level must be a string")
            config.log_level = LevelFilter.from_label(level)
        if "frame_buffer_logging" in data:
            config.frame_buffer_logging = _bool(data["frame_buffer_logging"], "frame_buffer_logging")
        if "serial_logging" in data:
            config.serial_logging = _bool(data["serial_logging"], "serial_logging")
        if "_test_sentinel" in data:
            config.test_sentinel = _u64(data["_test_sentinel"], "_test_sentinel")
        return config

    @staticmethod
    def from_json(text: str | bytes) -> BootConfig:
        """Parse JSON text; raises ValueError on malformed input."""
        return BootConfig.from_dict(json.loads(text))