"""Grid configuration for a calibration sweep.

The configuration file is line-oriented text where every setting sits in
angle brackets::

    <NumU = 9>
    <NumV = 9>
    <MillimeterDeltaU = 2.5>
    <MillimeterDeltaV = 2.5>
    <MillisecondsMeasureDuration = 2000>
    <CoordinatesFilePath = custom_grid.csv>

Anything outside the brackets is free-form commentary and is ignored.  Each
key is converted by the type listed in ``CONFIG_SCHEMA``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .errors import ConfigError, ConfigMissingKey
from .measurement import ALL_CHANNELS, Channel, normalize_channels

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "GridConfiguration.txt"


@dataclass(frozen=True, slots=True)
class CalibrationConfig:
    num_cols: int
    num_rows: int
    delta_u: float
    delta_v: float
    measure_window_ms: int
    # Anti-vibration pause between motion-complete and the measurement window.
    settle_ms: int = 500
    probe_length_mm: float = 0.1
    feedrate_mm_s: float = 20.0
    channels: tuple[Channel, ...] = ALL_CHANNELS
    coordinates_file_path: str | None = None

    def __post_init__(self) -> None:
        if self.num_cols <= 0:
            raise ConfigError("NumU must be > 0")
        if self.num_rows <= 0:
            raise ConfigError("NumV must be > 0")
        if self.measure_window_ms <= 0:
            raise ConfigError("MillisecondsMeasureDuration must be > 0")
        if self.settle_ms < 0:
            raise ConfigError("MillisecondsSettleTime must be >= 0")
        if self.probe_length_mm == 0:
            raise ConfigError("MillimeterProbeLength must be non-zero")
        if self.feedrate_mm_s <= 0:
            raise ConfigError("MillimeterPerSecondFeedrate must be > 0")
        try:
            channels = normalize_channels(self.channels)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        object.__setattr__(self, "channels", channels)

    @property
    def num_points(self) -> int:
        return self.num_cols * self.num_rows

    def measures(self, channel: Channel) -> bool:
        return channel in self.channels


@dataclass(frozen=True, slots=True)
class _Field:
    attr: str
    convert: Callable[[str], object]
    required: bool = True


def _as_int(raw: str) -> int:
    return int(raw)


def _as_float(raw: str) -> float:
    return float(raw)


def _as_path(raw: str) -> str:
    return raw.strip().strip('"')


CONFIG_SCHEMA: dict[str, _Field] = {
    "NumU": _Field("num_cols", _as_int),
    "NumV": _Field("num_rows", _as_int),
    "MillimeterDeltaU": _Field("delta_u", _as_float),
    "MillimeterDeltaV": _Field("delta_v", _as_float),
    "MillisecondsMeasureDuration": _Field("measure_window_ms", _as_int),
    "MillisecondsSettleTime": _Field("settle_ms", _as_int, required=False),
    "MillimeterProbeLength": _Field("probe_length_mm", _as_float, required=False),
    "MillimeterPerSecondFeedrate": _Field("feedrate_mm_s", _as_float, required=False),
    "CoordinatesFilePath": _Field("coordinates_file_path", _as_path, required=False),
}

_ENTRY_RE = re.compile(r"<([^<>]*)>")


def read_config_entries(text: str) -> dict[str, str]:
    """Return the raw ``name -> value`` pairs found between angle brackets."""

    entries: dict[str, str] = {}
    for match in _ENTRY_RE.finditer(text):
        body = match.group(1)
        if "=" not in body:
            raise ConfigError(f"Configuration entry has no '=': <{body}>")
        name, value = body.split("=", 1)
        name = name.strip()
        if not name:
            raise ConfigError(f"Configuration entry has no name: <{body}>")
        entries[name] = value.strip()
    return entries


def parse_grid_config(
    text: str,
    *,
    channels: tuple[Channel | str, ...] | None = None,
) -> CalibrationConfig:
    entries = read_config_entries(text)

    unknown = sorted(set(entries) - set(CONFIG_SCHEMA))
    if unknown:
        logger.warning("Ignoring unknown grid configuration variables: %s", ", ".join(unknown))

    kwargs: dict[str, object] = {}
    for key, field_def in CONFIG_SCHEMA.items():
        if key not in entries:
            if field_def.required:
                raise ConfigMissingKey(key)
            continue
        raw = entries[key]
        try:
            value = field_def.convert(raw)
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {key}: {raw!r}") from exc
        logger.debug("%s is %r", key, value)
        kwargs[field_def.attr] = value

    if kwargs.get("coordinates_file_path") == "":
        kwargs["coordinates_file_path"] = None
    if channels is not None:
        try:
            kwargs["channels"] = tuple(Channel(c) for c in channels)
        except ValueError as exc:
            raise ConfigError(f"Unknown channel in {list(channels)!r}") from exc
    return CalibrationConfig(**kwargs)  # type: ignore[arg-type]


def load_grid_config(
    path: str | Path = DEFAULT_CONFIG_PATH,
    *,
    channels: tuple[Channel | str, ...] | None = None,
) -> CalibrationConfig:
    in_path = Path(path)
    if not in_path.exists():
        raise ConfigError(f"Grid configuration file not found: {in_path}")
    return parse_grid_config(in_path.read_text(encoding="utf-8"), channels=channels)
