import asyncio
import logging
from contextlib import suppress

import pytest

from tacd.backlight import (
    BRIGHTNESS_PATH,
    Backlight,
    DemoBacklight,
    SysfsBacklight,
    scale_brightness,
)
from tacd.broker import BrokerBuilder


class RecordingBacklight:
    def __init__(self, maximum, fail=False):
        self.maximum = maximum
        self.fail = fail
        self.values = []

    def brightness(self):
        return self.values[-1] if self.values else 0

    def max_brightness(self):
        return self.maximum

    def set_brightness(self, value):
        self.values.append(value)
        if self.fail:
            raise OSError("device is gone")


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


async def _stop(task):
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


def test_demo_max_brightness():
    demo = DemoBacklight("backlight")
    assert demo.max_brightness() == 8
    assert demo.read_file("max_brightness") == "8"
    assert demo.parse_file("max_brightness") == 8


def test_demo_brightness_is_not_readable():
    demo = DemoBacklight("backlight")
    with pytest.raises(FileNotFoundError):
        demo.brightness()


def test_demo_other_device_has_no_files():
    demo = DemoBacklight("other")
    with pytest.raises(FileNotFoundError):
        demo.max_brightness()


def test_demo_write_is_logged(caplog):
    demo = DemoBacklight("backlight")
    with caplog.at_level(logging.INFO, logger="tacd.backlight"):
        demo.set_brightness(3)
    assert "Backlight: Write 3 to backlight/brightness" in caplog.text


def test_sysfs_backlight_reads_and_writes(tmp_path):
    device_dir = tmp_path / "backlight"
    device_dir.mkdir()
    (device_dir / "max_brightness").write_text("255\n")
    (device_dir / "brightness").write_text("10\n")

    device = SysfsBacklight("backlight", tmp_path)
    assert device.max_brightness() == 255
    assert device.brightness() == 10

    device.set_brightness(100)
    assert (device_dir / "brightness").read_text() == "100"
    assert device.brightness() == 100


def test_sysfs_backlight_rejects_garbage(tmp_path):
    device_dir = tmp_path / "backlight"
    device_dir.mkdir()
    (device_dir / "max_brightness").write_text("lots")
    with pytest.raises(ValueError):
        SysfsBacklight("backlight", tmp_path).max_brightness()


def test_sysfs_backlight_missing_device(tmp_path):
    with pytest.raises(FileNotFoundError):
        SysfsBacklight("absent", tmp_path).max_brightness()


def test_scale_full_and_off():
    assert scale_brightness(1.0, 8) == 8
    assert scale_brightness(0.0, 8) == 0


def test_scale_is_clamped():
    assert scale_brightness(2.0, 8) == 8
    assert scale_brightness(-1.0, 8) == 0
    assert scale_brightness(float("nan"), 8) == 0


def test_scale_dim_stays_on():
    assert scale_brightness(0.05, 8) == 1
    assert scale_brightness(0.005, 8) == 0


@pytest.mark.parametrize("fraction", [0.0, 0.02, 0.1, 0.33, 0.5, 0.75, 0.99, 1.0])
def test_scale_within_range_and_monotonic(fraction):
    value = scale_brightness(fraction, 255)
    assert 0 <= value <= 255
    assert scale_brightness(min(fraction + 0.1, 1.0), 255) >= value


def test_backlight_registers_topic():
    bb = BrokerBuilder()
    backlight = Backlight(bb, RecordingBacklight(8))
    assert backlight.brightness.path == BRIGHTNESS_PATH
    assert backlight.brightness.web_readable and backlight.brightness.web_writable
    assert backlight.brightness.try_get() == 1.0
    assert backlight.max_brightness == 8
    assert bb.topics == (backlight.brightness,)


@pytest.mark.asyncio
async def test_backlight_applies_topic_values():
    device = RecordingBacklight(8)
    backlight = Backlight(BrokerBuilder(), device)
    task = backlight.start()
    try:
        assert await _wait_for(lambda: device.values == [8])
        backlight.brightness.set(0.0)
        backlight.brightness.set(0.05)
        assert await _wait_for(lambda: len(device.values) == 3)
    finally:
        await _stop(task)

    assert device.values == [8, 0, 1]


@pytest.mark.asyncio
async def test_backlight_survives_device_errors(caplog):
    device = RecordingBacklight(8, fail=True)
    backlight = Backlight(BrokerBuilder(), device)
    with caplog.at_level(logging.WARNING, logger="tacd.backlight"):
        task = backlight.start()
        try:
            backlight.brightness.set(0.0)
            assert await _wait_for(lambda: len(device.values) == 2)
        finally:
            await _stop(task)

    assert device.values == [8, 0]
    assert "Failed to set LED pattern" in caplog.text


def test_backlight_with_demo_device_uses_its_maximum():
    backlight = Backlight(BrokerBuilder(), DemoBacklight("backlight"))
    assert backlight.max_brightness == 8