from __future__ import annotations

import math

import numpy as np
import pytest

from beam_calibration.calibration import CalibrationRun, ResultRow, ResultStore, deviation_magnitudes
from beam_calibration.config import CalibrationConfig
from beam_calibration.errors import DegenerateCalibration, EmptyMeasurementWindow
from beam_calibration.grid import generate_grid
from beam_calibration.hardware import SimulatedBeamSensor, SimulatedStage
from beam_calibration.measurement import Channel
from beam_calibration.transform import TransformMatrix

REFERENCE_FRAME = {
    "position_x": 12.0,
    "position_y": -3.0,
    "diameter": 0.5,
    "peak_intensity": 800.0,
    "ellipticity": 0.9,
}


class DummyStage:
    def __init__(self) -> None:
        self.probe: tuple[float, float] | None = None
        self.zeroed = 0
        self.moves: list[tuple[float, float]] = []
        self.probes: list[tuple[float, float]] = []
        self.waits = 0

    def set_zero(self) -> None:
        self.zeroed += 1

    def move_to_abs(self, u_mm: float, v_mm: float, feedrate_mm_s: float) -> None:
        self.probe = None
        self.moves.append((u_mm, v_mm))

    def move_beam_abs(self, u_mm: float, v_mm: float, feedrate_mm_s: float) -> None:
        self.probe = (u_mm, v_mm)
        self.probes.append((u_mm, v_mm))

    def wait_for_motion_done(self) -> None:
        self.waits += 1


class ProbeAwareSensor:
    """Reports the reference frame everywhere except at the two probe positions."""

    def __init__(self, stage: DummyStage, probe_length: float) -> None:
        self.stage = stage
        self.probe_length = probe_length
        self.callbacks = []
        self.mute_after_windows: int | None = None
        self.windows = 0

    def subscribe(self, callback) -> None:
        self.callbacks.append(callback)

    def unsubscribe(self, callback) -> None:
        self.callbacks.remove(callback)

    def frame(self) -> dict[str, float]:
        out = dict(REFERENCE_FRAME)
        if self.stage.probe == (self.probe_length, 0.0):
            out["position_x"] += self.probe_length
        elif self.stage.probe == (0.0, self.probe_length):
            out["position_y"] += self.probe_length
        return out

    def dwell(self, _seconds: float) -> None:
        self.windows += 1
        if self.mute_after_windows is not None and self.windows > self.mute_after_windows:
            return
        for cb in list(self.callbacks):
            for _ in range(3):
                cb(self.frame())


def _config(**overrides) -> CalibrationConfig:
    values = dict(num_cols=3, num_rows=3, delta_u=1.0, delta_v=1.0, measure_window_ms=100, settle_ms=0)
    values.update(overrides)
    return CalibrationConfig(**values)


def _run_with(stage, sensor, config) -> CalibrationRun:
    return CalibrationRun(stage, sensor, config, sleep=sensor.dwell)


def test_constant_reading_gives_zero_deviation_and_unit_intensity():
    config = _config()
    stage = DummyStage()
    sensor = ProbeAwareSensor(stage, config.probe_length_mm)
    points = generate_grid(config)

    result = _run_with(stage, sensor, config).run(points)

    assert result.completed
    assert np.allclose(result.transform.matrix, np.eye(2))
    assert result.transform.scale == pytest.approx(1.0)
    assert len(result.rows) == 9
    for row in result.rows:
        assert row.deviation_u == pytest.approx(0.0)
        assert row.deviation_v == pytest.approx(0.0)
        assert row.relative_intensity == pytest.approx(1.0)
        assert row.diameter == pytest.approx(0.5)
        assert row.ellipticity == pytest.approx(0.9)
    assert [(r.row, r.col) for r in result.rows] == [(p.row, p.col) for p in points]


def test_reference_point_is_exact_and_not_revisited():
    config = _config()
    stage = DummyStage()
    sensor = ProbeAwareSensor(stage, config.probe_length_mm)
    points = generate_grid(config)

    result = _run_with(stage, sensor, config).run(points)

    ref = [r for r in result.rows if r.is_reference]
    assert len(ref) == 1
    assert (ref[0].deviation_u, ref[0].deviation_v, ref[0].relative_intensity) == (0.0, 0.0, 1.0)
    # set_zero once; probe base, reference, 8 grid points, home
    assert stage.zeroed == 1
    assert stage.probes == [(0.1, 0.0), (0.0, 0.1)]
    assert stage.moves == [
        (0.0, 0.0),
        (0.0, 0.0),
        *[(p.target_u, p.target_v) for p in points if not p.is_reference],
        (0.0, 0.0),
    ]
    assert stage.waits == len(stage.moves) + len(stage.probes)
    assert sensor.callbacks == []


def test_settle_delay_follows_every_move():
    config = _config(settle_ms=500)
    stage = DummyStage()
    sensor = ProbeAwareSensor(stage, config.probe_length_mm)
    sleeps: list[float] = []

    def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        sensor.dwell(seconds)

    CalibrationRun(stage, sensor, config, sleep=_sleep).run(generate_grid(config))

    assert sleeps.count(0.5) == len(stage.moves) + len(stage.probes)
    assert sleeps.count(0.1) == 3 + 1 + 8


def test_rotated_scaled_sensor_is_mapped_back_to_stage_space():
    config = _config(num_cols=5, num_rows=5, delta_u=2.0, delta_v=2.0)
    stage = SimulatedStage()
    sensor = SimulatedBeamSensor.rotated(stage, angle_deg=10.0, scale=0.8, offset=(100.0, 50.0))
    run = CalibrationRun(stage, sensor, config, sleep=lambda _s: sensor.emit_frame())

    result = run.run(generate_grid(config))

    assert result.completed
    assert result.transform.scale == pytest.approx(1.25)
    assert np.allclose(deviation_magnitudes(result.rows), 0.0, atol=1e-9)
    corner = next(r for r in result.rows if (r.row, r.col) == (0, 0))
    assert corner.relative_intensity < 1.0
    assert corner.diameter == pytest.approx(1.25 * (1.0 + 0.01 * math.hypot(4.0, 4.0)))


def test_radial_distortion_shows_up_as_outward_deviation():
    config = _config(num_cols=3, num_rows=3, delta_u=10.0, delta_v=10.0)
    stage = SimulatedStage()
    sensor = SimulatedBeamSensor(stage, distortion_per_mm2=1e-4)
    run = CalibrationRun(stage, sensor, config, sleep=lambda _s: sensor.emit_frame())

    result = run.run(generate_grid(config))

    right = next(r for r in result.rows if (r.row, r.col) == (1, 2))
    assert right.deviation_u == pytest.approx(10.0 * 1e-4 * 100.0, rel=1e-3)
    assert right.deviation_v == pytest.approx(0.0, abs=1e-9)


def test_window_failure_stops_traversal_keeps_rows_and_homes_stage():
    config = _config()
    stage = DummyStage()
    sensor = ProbeAwareSensor(stage, config.probe_length_mm)
    # probe base, +X, +Y, reference, then two grid points succeed
    sensor.mute_after_windows = 6
    steps = []

    result = _run_with(stage, sensor, config).run(
        generate_grid(config),
        on_step=lambda i, total, point, row: steps.append((i, total, row is not None)),
    )

    assert not result.completed
    assert isinstance(result.failure, EmptyMeasurementWindow)
    assert len(result.rows) == 2
    assert steps == [(1, 9, True), (2, 9, True), (3, 9, False)]
    assert stage.moves[-1] == (0.0, 0.0)


def test_failure_while_measuring_reference_is_raised():
    config = _config()
    stage = DummyStage()
    sensor = ProbeAwareSensor(stage, config.probe_length_mm)
    sensor.mute_after_windows = 3

    with pytest.raises(EmptyMeasurementWindow):
        _run_with(stage, sensor, config).run(generate_grid(config))
    assert stage.moves[-1] == (0.0, 0.0)
    assert sensor.callbacks == []


def test_degenerate_probes_abort_the_run():
    config = _config()
    stage = DummyStage()
    sensor = ProbeAwareSensor(stage, config.probe_length_mm)
    sensor.probe_length = 99.0  # sensor never sees the probe moves

    with pytest.raises(DegenerateCalibration):
        _run_with(stage, sensor, config).run(generate_grid(config))
    assert stage.moves[-1] == (0.0, 0.0)


def test_cancel_stops_before_next_point():
    config = _config()
    stage = DummyStage()
    sensor = ProbeAwareSensor(stage, config.probe_length_mm)
    calls = {"n": 0}

    def _should_stop() -> bool:
        calls["n"] += 1
        return calls["n"] > 4

    result = _run_with(stage, sensor, config).run(generate_grid(config), should_stop=_should_stop)

    assert result.cancelled
    assert result.failure is None
    assert len(result.rows) == 4
    assert not result.completed


def test_supplied_transform_skips_probe_moves():
    config = _config()
    stage = DummyStage()
    sensor = ProbeAwareSensor(stage, config.probe_length_mm)
    t = TransformMatrix(a=2.0, b=0.0, c=0.0, d=2.0, scale=3.0)

    result = _run_with(stage, sensor, config).run(generate_grid(config), transform=t)

    assert result.transform is t
    assert stage.probes == []
    assert result.rows[0].diameter == pytest.approx(0.5 * 3.0)
    (ref,) = [r for r in result.rows if r.is_reference]
    assert ref.diameter == pytest.approx(0.5 * 3.0)


def test_two_channel_variant_leaves_shape_fields_empty():
    config = _config(channels=(Channel.POSITION_X, Channel.POSITION_Y))
    stage = DummyStage()
    sensor = ProbeAwareSensor(stage, config.probe_length_mm)

    result = _run_with(stage, sensor, config).run(generate_grid(config))

    assert all(r.diameter is None and r.relative_intensity is None and r.ellipticity is None for r in result.rows)


def test_intensity_ratio_only_when_peak_channel_is_measured():
    config = _config(channels=(Channel.POSITION_X, Channel.POSITION_Y, Channel.DIAMETER))
    stage = DummyStage()
    sensor = ProbeAwareSensor(stage, config.probe_length_mm)

    result = _run_with(stage, sensor, config).run(generate_grid(config))

    assert all(r.relative_intensity is None for r in result.rows)
    assert all(r.diameter is not None for r in result.rows)


def test_result_store_is_fill_once():
    store = ResultStore(1)
    row = ResultRow(row=0, col=0, is_reference=True, ideal_u=0.0, ideal_v=0.0, deviation_u=0.0, deviation_v=0.0)
    store.record(row)

    assert store.is_complete
    with pytest.raises(RuntimeError):
        store.record(row)


def test_deviation_magnitudes():
    rows = [
        ResultRow(row=0, col=0, is_reference=False, ideal_u=0.0, ideal_v=0.0, deviation_u=3.0, deviation_v=4.0),
    ]
    assert deviation_magnitudes(rows).tolist() == [5.0]
    assert deviation_magnitudes([]).size == 0
    assert math.isclose(float(deviation_magnitudes(rows).max()), 5.0)
