import json

import pytest

from bootimage.boot_config import BootConfig, FrameBuffer, LevelFilter


def test_defaults():
    data = BootConfig().to_dict()
    assert data["log_level"] == "Trace"
    assert data["frame_buffer_logging"] is True
    assert data["serial_logging"] is True
    assert data["_test_sentinel"] == 0
    assert data["frame_buffer"]["minimum_framebuffer_height"] is None


def test_round_trip():
    config = BootConfig(FrameBuffer(720, 1280), LevelFilter.WARN, False, True, 42)
    assert BootConfig.from_json(config.to_json()) == config


def test_partial_json_uses_defaults():
    config = BootConfig.from_json('{"serial_logging": false, "extra": 1}')
    assert config.serial_logging is False
    assert config.log_level is LevelFilter.TRACE
    assert config.frame_buffer == FrameBuffer()


def test_to_json_is_pretty():
    text = BootConfig().to_json()
    assert "\n" in text
    assert json.loads(text) == BootConfig().to_dict()


def test_level_ordering():
    off = BootConfig.from_dict({"log_level": "Off"}).log_level
    error = BootConfig.from_dict({"log_level": "Error"}).log_level
    default = BootConfig().log_level
    assert off is LevelFilter.OFF
    assert error is LevelFilter.ERROR
    assert off < error < default


@pytest.mark.parametrize(
    "text",
    ['{"log_level": "trace"}', '{"serial_logging": 1}', '{"_test_sentinel": -1}', "[]"],
)
def test_invalid(text):
    with pytest.raises(ValueError):
        BootConfig.from_json(text)