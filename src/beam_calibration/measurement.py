from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable

import numpy as np

from .errors import EmptyMeasurementWindow
from .interfaces import SensorFrame

logger = logging.getLogger(__name__)


class Channel(str, Enum):
    POSITION_X = "position_x"
    POSITION_Y = "position_y"
    DIAMETER = "diameter"
    PEAK_INTENSITY = "peak_intensity"
    ELLIPTICITY = "ellipticity"


REQUIRED_CHANNELS: tuple[Channel, ...] = (Channel.POSITION_X, Channel.POSITION_Y)
ALL_CHANNELS: tuple[Channel, ...] = tuple(Channel)


def normalize_channels(channels: Iterable[Channel | str]) -> tuple[Channel, ...]:
    """Validate a channel selection and return it in canonical order."""

    selected = {Channel(c) for c in channels}
    missing = [c.value for c in REQUIRED_CHANNELS if c not in selected]
    if missing:
        raise ValueError(f"Position channels are always measured; missing: {', '.join(missing)}")
    return tuple(c for c in ALL_CHANNELS if c in selected)


class WindowState(str, Enum):
    IDLE = "IDLE"
    COLLECTING = "COLLECTING"


@dataclass(slots=True)
class RawMeasurement:
    """Channel means over one dwell window."""

    position_x: float
    position_y: float
    diameter: float | None = None
    peak_intensity: float | None = None
    ellipticity: float | None = None
    sample_counts: dict[str, int] = field(default_factory=dict)

    @property
    def position(self) -> np.ndarray:
        return np.array([self.position_x, self.position_y], dtype=float)

    def as_dict(self) -> dict[str, float | None]:
        return {
            Channel.POSITION_X.value: self.position_x,
            Channel.POSITION_Y.value: self.position_y,
            Channel.DIAMETER.value: self.diameter,
            Channel.PEAK_INTENSITY.value: self.peak_intensity,
            Channel.ELLIPTICITY.value: self.ellipticity,
        }


class MeasurementAggregator:
    """Averages streaming sensor channels over fixed dwell windows.

    Frames arrive through :meth:`on_frame`, usually from the sensor driver's
    own notification thread. They are only kept while a window is open, so
    frames that arrive while the stage is still moving or settling are dropped.
    Windows never overlap: one calibration point is measured at a time.
    """

    def __init__(
        self,
        channels: Iterable[Channel | str] = ALL_CHANNELS,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._channels = normalize_channels(channels)
        self._sleep = sleep
        self._lock = threading.Lock()
        self._state = WindowState.IDLE
        self._samples: dict[Channel, list[float]] = {c: [] for c in self._channels}

    @property
    def channels(self) -> tuple[Channel, ...]:
        return self._channels

    @property
    def state(self) -> WindowState:
        with self._lock:
            return self._state

    def on_frame(self, frame: SensorFrame) -> None:
        """Sensor callback: append one value per configured channel."""
        with self._lock:
            if self._state is not WindowState.COLLECTING:
                return
            for channel in self._channels:
                value = frame.get(channel.value)
                if value is None:
                    continue
                self._samples[channel].append(float(value))

    def start_window(self) -> None:
        with self._lock:
            if self._state is WindowState.COLLECTING:
                raise RuntimeError("A measurement window is already open")
            for values in self._samples.values():
                values.clear()
            self._state = WindowState.COLLECTING

    def end_window(self, duration_ms: float) -> RawMeasurement:
        """Wait out the dwell time, close the window and return channel means."""

        if duration_ms < 0:
            raise ValueError("duration_ms must be >= 0")
        with self._lock:
            if self._state is not WindowState.COLLECTING:
                raise RuntimeError("No measurement window is open")

        # Always runs to completion; there is no way to cut a window short.
        self._sleep(duration_ms / 1000.0)

        with self._lock:
            self._state = WindowState.IDLE
            collected = {c: list(v) for c, v in self._samples.items()}
            for values in self._samples.values():
                values.clear()

        means: dict[Channel, float] = {}
        for channel, values in collected.items():
            if not values:
                logger.error("Empty %g ms window on channel %s", duration_ms, channel.value)
                raise EmptyMeasurementWindow(channel.value, duration_ms)
            means[channel] = float(np.mean(values))

        return RawMeasurement(
            position_x=means[Channel.POSITION_X],
            position_y=means[Channel.POSITION_Y],
            diameter=means.get(Channel.DIAMETER),
            peak_intensity=means.get(Channel.PEAK_INTENSITY),
            ellipticity=means.get(Channel.ELLIPTICITY),
            sample_counts={c.value: len(v) for c, v in collected.items()},
        )

    def measure(self, duration_ms: float) -> RawMeasurement:
        self.start_window()
        return self.end_window(duration_ms)
