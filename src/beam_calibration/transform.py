from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np

from .errors import DegenerateCalibration

logger = logging.getLogger(__name__)

# Relative to |probe_x| * |probe_y|, i.e. the sine of the angle between probes.
DEFAULT_MIN_SINE = 1e-9


@dataclass(frozen=True, slots=True)
class TransformMatrix:
    """Linear map from sensor-space deviations to stage-space deviations.

    ``scale`` is the isotropic sensor-to-stage length factor used for
    direction-free quantities such as the beam diameter.
    """

    a: float
    b: float
    c: float
    d: float
    scale: float

    @classmethod
    def identity(cls) -> "TransformMatrix":
        return cls(a=1.0, b=0.0, c=0.0, d=1.0, scale=1.0)

    @property
    def matrix(self) -> np.ndarray:
        return np.array([[self.a, self.b], [self.c, self.d]], dtype=float)

    def apply(self, x: float, y: float) -> tuple[float, float]:
        return (self.a * x + self.b * y, self.c * x + self.d * y)


def estimate_transform(
    probe_x: tuple[float, float],
    probe_y: tuple[float, float],
    probe_length: float,
    *,
    min_sine: float = DEFAULT_MIN_SINE,
) -> TransformMatrix:
    """Solve for the map that sends each probe deviation back to its stage move.

    ``probe_x`` is the sensor deviation after moving ``probe_length`` along
    stage X only, ``probe_y`` likewise for stage Y. The 2x2 system is solved in
    closed form (Cramer's rule).
    """

    if not math.isfinite(probe_length) or probe_length == 0.0:
        raise ValueError("probe_length must be finite and non-zero")

    x1, y1 = float(probe_x[0]), float(probe_x[1])
    x2, y2 = float(probe_y[0]), float(probe_y[1])
    values = (x1, y1, x2, y2)
    if not all(math.isfinite(v) for v in values):
        raise DegenerateCalibration(f"Probe deviations must be finite, got {probe_x!r} and {probe_y!r}")

    norm_x = math.hypot(x1, y1)
    norm_y = math.hypot(x2, y2)
    det = x1 * y2 - x2 * y1
    if norm_x == 0.0 or norm_y == 0.0 or abs(det) <= min_sine * norm_x * norm_y:
        logger.warning("Degenerate probe vectors: probe_x=%r probe_y=%r det=%g", probe_x, probe_y, det)
        raise DegenerateCalibration(
            "Probe deviations are collinear in sensor space "
            f"(probe_x=({x1:+.6g}, {y1:+.6g}), probe_y=({x2:+.6g}, {y2:+.6g})); "
            "check sensor alignment and that the stage moved during the probe steps"
        )

    L = probe_length
    a = L * y2 / det
    b = -L * x2 / det
    c = -L * y1 / det
    d = L * x1 / det
    scale = 0.5 * (abs(L) / norm_x + abs(L) / norm_y)

    logger.debug("Estimated transform a=%g b=%g c=%g d=%g scale=%g", a, b, c, d, scale)
    return TransformMatrix(a=a, b=b, c=c, d=d, scale=scale)
