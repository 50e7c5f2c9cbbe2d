"""Display backlight brightness, controlled through a topic."""

from __future__ import annotations

import asyncio
import logging
import math
from pathlib import Path, PurePosixPath
from typing import Optional, Protocol, Union

from .broker import BrokerBuilder
from .topic import Topic

logger = logging.getLogger(__name__)

BRIGHTNESS_PATH = "/v1/tac/display/backlight/brightness"
SYSFS_BACKLIGHT_ROOT = Path("/sys/class/backlight")

# A fraction above this never turns the backlight off completely.
_DIM_THRESHOLD = 0.01


class BacklightDevice(Protocol):
    def brightness(self) -> int: ...

    def max_brightness(self) -> int: ...

    def set_brightness(self, value: int) -> None: ...


class DemoBacklight:
    """A simulated backlight with a maximum brightness of 8 that only logs writes."""

    def __init__(self, path: Union[str, PurePosixPath] = "backlight") -> None:
        self.path = PurePosixPath(path)

    def read_file(self, name: str) -> str:
        path = str(self.path / name)
        if path == "backlight/max_brightness":
            return "8"
        raise FileNotFoundError(f"{path} not found")

    def parse_file(self, name: str) -> int:
        text = self.read_file(name)
        try:
            return int(text.strip())
        except ValueError:
            raise ValueError("too bad") from None

    def write_file(self, name: str, data: Union[str, bytes]) -> None:
        path = self.path / name
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        logger.info("Backlight: Write %s to %s", data, path)

    def brightness(self) -> int:
        return self.parse_file("brightness")

    def max_brightness(self) -> int:
        return self.parse_file("max_brightness")

    def set_brightness(self, value: int) -> None:
        self.write_file("brightness", str(value))


class SysfsBacklight:
    """A backlight device in the sysfs backlight class."""

    def __init__(self, name: str = "backlight", root: Union[str, Path] = SYSFS_BACKLIGHT_ROOT) -> None:
        self.path = Path(root) / name

    def _read_int(self, name: str) -> int:
        text = (self.path / name).read_text()
        try:
            return int(text.strip())
        except ValueError:
            raise ValueError(f"{self.path / name} does not hold an integer") from None

    def brightness(self) -> int:
        return self._read_int("brightness")

    def max_brightness(self) -> int:
        return self._read_int("max_brightness")

    def set_brightness(self, value: int) -> None:
        (self.path / "brightness").write_text(str(value))


def scale_brightness(fraction: float, max_brightness: int) -> int:
    """Map a brightness fraction to a device value in ``0..=max_brightness``.

    Low but non-zero fractions yield at least 1, as 0 turns the light off.
    """
    scaled = float(max_brightness) * float(fraction)
    if math.isnan(scaled):
        brightness = 0
    else:
        brightness = int(min(max(scaled, 0.0), float(max_brightness)))

    if fraction > _DIM_THRESHOLD and brightness == 0:
        brightness = 1

    return brightness


class Backlight:
    """Applies the brightness topic's value to a backlight device."""

    def __init__(self, bb: BrokerBuilder, device: Optional[BacklightDevice] = None) -> None:
        self.brightness: Topic[float] = bb.topic_rw(BRIGHTNESS_PATH, 1.0)
        self._rx, _ = self.brightness.subscribe_unbounded()
        self.device: BacklightDevice = device if device is not None else SysfsBacklight("backlight")
        self.max_brightness = self.device.max_brightness()

    async def run(self) -> None:
        """Set the device brightness for every new topic value."""
        async for fraction in self._rx:
            value = scale_brightness(fraction, self.max_brightness)
            try:
                self.device.set_brightness(value)
            except OSError as e:
                logger.warning("Failed to set LED pattern: %s", e)

    def start(self) -> "asyncio.Task[None]":
        """Run :meth:`run` as a task on the running event loop."""
        return asyncio.get_running_loop().create_task(self.run())