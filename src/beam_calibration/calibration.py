from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

import numpy as np

from .config import CalibrationConfig
from .errors import EmptyMeasurementWindow
from .grid import GridPoint
from .interfaces import BeamSensorInterface, StageInterface
from .measurement import Channel, MeasurementAggregator, RawMeasurement
from .transform import TransformMatrix, estimate_transform

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ResultRow:
    """One grid point of a finished run, in stage millimetres.

    Deviations are the transformed sensor displacement from the reference.
    ``diameter`` is the measured beam diameter multiplied by the transform
    scale, so it is in stage millimetres too, the reference row included.
    ``relative_intensity`` is the peak intensity divided by the reference
    peak. Channels that were not measured are ``None``.
    """

    row: int
    col: int
    is_reference: bool
    ideal_u: float
    ideal_v: float
    deviation_u: float
    deviation_v: float
    diameter: float | None = None
    relative_intensity: float | None = None
    ellipticity: float | None = None


class ResultStore:
    """Per-point results, filled once in traversal order and then read-only."""

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self._capacity = capacity
        self._rows: list[ResultRow] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def rows(self) -> tuple[ResultRow, ...]:
        return tuple(self._rows)

    @property
    def is_complete(self) -> bool:
        return len(self._rows) == self._capacity

    def record(self, row: ResultRow) -> None:
        if len(self._rows) >= self._capacity:
            raise RuntimeError(f"Result store is full ({self._capacity} rows)")
        self._rows.append(row)

    def __len__(self) -> int:
        return len(self._rows)


@dataclass(slots=True)
class CalibrationResult:
    transform: TransformMatrix
    reference: RawMeasurement
    store: ResultStore
    # Set when the traversal stopped early; rows recorded before it stay valid.
    failure: Exception | None = None
    cancelled: bool = False

    @property
    def rows(self) -> tuple[ResultRow, ...]:
        return self.store.rows

    @property
    def completed(self) -> bool:
        return self.failure is None and not self.cancelled and self.store.is_complete


StepCallback = Callable[[int, int, GridPoint, ResultRow | None], None]


class CalibrationRun:
    """Drives one calibration sweep over a grid.

    The stage origin is set at the current position, the sensor-to-stage
    transform is estimated from two probe moves, the reference is measured at
    the origin, and then every grid point is visited, measured and converted
    into stage-space deviations.
    """

    def __init__(
        self,
        stage: StageInterface,
        sensor: BeamSensorInterface,
        config: CalibrationConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._stage = stage
        self._sensor = sensor
        self._config = config
        self._sleep = sleep
        self._aggregator = MeasurementAggregator(config.channels, sleep=sleep)

    @property
    def aggregator(self) -> MeasurementAggregator:
        return self._aggregator

    def _move_and_settle(self, u: float, v: float, *, beam_only: bool = False) -> None:
        if beam_only:
            self._stage.move_beam_abs(u, v, self._config.feedrate_mm_s)
        else:
            self._stage.move_to_abs(u, v, self._config.feedrate_mm_s)
        self._stage.wait_for_motion_done()
        if self._config.settle_ms > 0:
            self._sleep(self._config.settle_ms / 1000.0)

    def _measure(self) -> RawMeasurement:
        return self._aggregator.measure(self._config.measure_window_ms)

    def estimate_transform(self) -> TransformMatrix:
        """Probe the beam along stage X then stage Y and solve for the map.

        Only the beam axes move during a probe, so the sensor sees the full
        probe displacement.
        """

        length = self._config.probe_length_mm
        self._move_and_settle(0.0, 0.0)
        base = self._measure()
        self._move_and_settle(length, 0.0, beam_only=True)
        probe_x = self._measure().position - base.position
        self._move_and_settle(0.0, length, beam_only=True)
        probe_y = self._measure().position - base.position
        logger.info("Probe deviations: x=%s y=%s", probe_x, probe_y)
        return estimate_transform(tuple(probe_x), tuple(probe_y), length)

    def measure_reference(self) -> RawMeasurement:
        self._move_and_settle(0.0, 0.0)
        return self._measure()

    def _reference_row(self, point: GridPoint, transform: TransformMatrix, reference: RawMeasurement) -> ResultRow:
        return ResultRow(
            row=point.row,
            col=point.col,
            is_reference=True,
            ideal_u=point.target_u,
            ideal_v=point.target_v,
            deviation_u=0.0,
            deviation_v=0.0,
            diameter=None if reference.diameter is None else reference.diameter * transform.scale,
            relative_intensity=1.0 if self._config.measures(Channel.PEAK_INTENSITY) else None,
            ellipticity=reference.ellipticity,
        )

    def _point_row(
        self,
        point: GridPoint,
        transform: TransformMatrix,
        reference: RawMeasurement,
        measured: RawMeasurement,
    ) -> ResultRow:
        delta = measured.position - reference.position
        dev_u, dev_v = transform.apply(float(delta[0]), float(delta[1]))

        relative_intensity = None
        if self._config.measures(Channel.PEAK_INTENSITY):
            if reference.peak_intensity == 0.0:
                relative_intensity = float("nan")
            else:
                relative_intensity = measured.peak_intensity / reference.peak_intensity

        return ResultRow(
            row=point.row,
            col=point.col,
            is_reference=False,
            ideal_u=point.target_u,
            ideal_v=point.target_v,
            deviation_u=dev_u,
            deviation_v=dev_v,
            diameter=None if measured.diameter is None else measured.diameter * transform.scale,
            relative_intensity=relative_intensity,
            ellipticity=measured.ellipticity,
        )

    def run(
        self,
        points: list[GridPoint],
        *,
        transform: TransformMatrix | None = None,
        on_step: StepCallback | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> CalibrationResult:
        """Run the sweep and return whatever was recorded.

        A window failure on a grid point stops the traversal but is not
        raised; it is reported on the result. Failures while estimating the
        transform or measuring the reference are raised, since nothing after
        them would be meaningful. The stage is always sent back to the origin.
        """

        self._sensor.subscribe(self._aggregator.on_frame)
        try:
            self._stage.set_zero()
            try:
                if transform is None:
                    transform = self.estimate_transform()
                reference = self.measure_reference()
                logger.info(
                    "Reference position x=%g y=%g (samples=%s)",
                    reference.position_x,
                    reference.position_y,
                    reference.sample_counts,
                )

                result = CalibrationResult(
                    transform=transform,
                    reference=reference,
                    store=ResultStore(len(points)),
                )
                self._traverse(points, result, on_step=on_step, should_stop=should_stop)
            finally:
                self._move_and_settle(0.0, 0.0)
        finally:
            self._sensor.unsubscribe(self._aggregator.on_frame)
        return result

    def _traverse(
        self,
        points: list[GridPoint],
        result: CalibrationResult,
        *,
        on_step: StepCallback | None,
        should_stop: Callable[[], bool] | None,
    ) -> None:
        total = len(points)
        for i, point in enumerate(points):
            step_index = i + 1
            if should_stop is not None and should_stop():
                logger.warning("Calibration cancelled after %d of %d points", i, total)
                result.cancelled = True
                return

            if point.is_reference:
                row = self._reference_row(point, result.transform, result.reference)
            else:
                self._move_and_settle(point.target_u, point.target_v)
                try:
                    measured = self._measure()
                except EmptyMeasurementWindow as exc:
                    logger.error(
                        "Measurement failed at row=%d column=%d (%d of %d): %s",
                        point.row,
                        point.col,
                        step_index,
                        total,
                        exc,
                    )
                    result.failure = exc
                    if on_step is not None:
                        on_step(step_index, total, point, None)
                    return
                row = self._point_row(point, result.transform, result.reference, measured)

            result.store.record(row)
            logger.debug(
                "Point %d/%d row=%d column=%d deviation=(%+.5f, %+.5f)",
                step_index,
                total,
                row.row,
                row.col,
                row.deviation_u,
                row.deviation_v,
            )
            if on_step is not None:
                on_step(step_index, total, point, row)


def deviation_magnitudes(rows: tuple[ResultRow, ...] | list[ResultRow]) -> np.ndarray:
    """Euclidean deviation per row, in the row order given."""
    if not rows:
        return np.zeros(0, dtype=float)
    arr = np.array([[r.deviation_u, r.deviation_v] for r in rows], dtype=float)
    return np.hypot(arr[:, 0], arr[:, 1])
