from __future__ import annotations


class CalibrationError(Exception):
    """Base class for calibration sweep failures."""


class ConfigError(CalibrationError, ValueError):
    """Raised when the grid configuration cannot be parsed or validated."""


class ConfigMissingKey(ConfigError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Required grid configuration variable is missing: {key}")
        self.key = key


class MalformedGrid(CalibrationError, ValueError):
    """Raised when a grid coordinates file has a bad row."""


class GridFileNotFound(CalibrationError, FileNotFoundError):
    """Raised when a grid coordinates file does not exist."""


class DegenerateCalibration(CalibrationError, ValueError):
    """Raised when the probe vectors cannot define a sensor-to-stage map.

    This happens when the two probe deviations are collinear (or zero) in
    sensor space, which points at a misaligned sensor or a stage that did not
    actually move.
    """


class EmptyMeasurementWindow(CalibrationError, RuntimeError):
    def __init__(self, channel: str, duration_ms: float) -> None:
        super().__init__(
            f"No samples received on channel {channel!r} during a {duration_ms:g} ms window; "
            "check that the sensor is streaming frames"
        )
        self.channel = channel
        self.duration_ms = duration_ms
