from __future__ import annotations

import threading
import time

import numpy as np

from .interfaces import FrameCallback
from .measurement import Channel


class SimulatedStage:
    """In-memory stage with beam axes (U/V) and sensor-carrying axes.

    Positions are kept in machine coordinates. Commands and the
    ``get_*_position`` getters work relative to the origin set by
    :meth:`set_zero`, so zeroing never moves anything. A coordinated move
    puts both at the same target, so the beam would land on the sensor's
    reference spot if the beam optics were perfect.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._origin = np.zeros(2, dtype=float)
        self._beam = np.zeros(2, dtype=float)
        self._sensor = np.zeros(2, dtype=float)
        self.moves: list[tuple[str, float, float]] = []

    def set_zero(self) -> None:
        with self._lock:
            self._origin = self._beam.copy()

    def _check_feedrate(self, feedrate_mm_s: float) -> None:
        if feedrate_mm_s <= 0:
            raise ValueError("feedrate_mm_s must be > 0")

    def move_to_abs(self, u_mm: float, v_mm: float, feedrate_mm_s: float = 20.0) -> None:
        self._check_feedrate(feedrate_mm_s)
        with self._lock:
            target = self._origin + np.array([u_mm, v_mm], dtype=float)
            self._beam = target.copy()
            self._sensor = target.copy()
        self.moves.append(("coordinated", float(u_mm), float(v_mm)))

    def move_beam_abs(self, u_mm: float, v_mm: float, feedrate_mm_s: float = 20.0) -> None:
        self._check_feedrate(feedrate_mm_s)
        with self._lock:
            # Sensor axes hold their position.
            self._beam = self._origin + np.array([u_mm, v_mm], dtype=float)
        self.moves.append(("beam", float(u_mm), float(v_mm)))

    def wait_for_motion_done(self) -> None:
        return None

    def get_beam_position(self) -> tuple[float, float]:
        with self._lock:
            rel = self._beam - self._origin
        return float(rel[0]), float(rel[1])

    def get_sensor_position(self) -> tuple[float, float]:
        with self._lock:
            rel = self._sensor - self._origin
        return float(rel[0]), float(rel[1])

    def machine_positions(self) -> tuple[np.ndarray, np.ndarray]:
        """Beam and sensor positions in machine coordinates, ignoring the origin."""
        with self._lock:
            return self._beam.copy(), self._sensor.copy()


class SimulatedBeamSensor:
    """Beam profiler that observes a :class:`SimulatedStage`.

    The reported centroid is ``sensor_from_stage @ (landing - sensor) + offset``
    where ``landing`` is the beam position after an optional radial
    distortion of the beam optics, plus Gaussian noise. The beam widens and
    dims slightly with distance from the origin so the shape channels are
    not constant.
    """

    def __init__(
        self,
        stage: SimulatedStage,
        *,
        sensor_from_stage: np.ndarray | None = None,
        offset: tuple[float, float] = (0.0, 0.0),
        noise_std: float = 0.0,
        distortion_per_mm2: float = 0.0,
        diameter: float = 1.0,
        peak_intensity: float = 1000.0,
        ellipticity: float = 0.95,
        rate_hz: float = 50.0,
        seed: int | None = None,
    ) -> None:
        if rate_hz <= 0:
            raise ValueError("rate_hz must be > 0")
        if noise_std < 0:
            raise ValueError("noise_std must be >= 0")
        self._stage = stage
        self._matrix = np.eye(2) if sensor_from_stage is None else np.asarray(sensor_from_stage, dtype=float)
        if self._matrix.shape != (2, 2):
            raise ValueError("sensor_from_stage must be a 2x2 matrix")
        self._offset = np.asarray(offset, dtype=float)
        self._noise_std = noise_std
        self._distortion = distortion_per_mm2
        self._diameter = diameter
        self._peak_intensity = peak_intensity
        self._ellipticity = ellipticity
        self._rate_hz = rate_hz
        self._rng = np.random.default_rng(seed)
        self._callbacks: list[FrameCallback] = []
        self._cb_lock = threading.Lock()
        self._stop_evt = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def rotated(cls, stage: SimulatedStage, *, angle_deg: float = 0.0, scale: float = 1.0, **kwargs) -> "SimulatedBeamSensor":
        theta = np.deg2rad(angle_deg)
        rot = np.array([[np.cos(theta), -np.sin(theta)], [np.sin(theta), np.cos(theta)]])
        return cls(stage, sensor_from_stage=scale * rot, **kwargs)

    def subscribe(self, callback: FrameCallback) -> None:
        with self._cb_lock:
            self._callbacks.append(callback)

    def unsubscribe(self, callback: FrameCallback) -> None:
        with self._cb_lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def read_frame(self) -> dict[str, float]:
        beam, sensor = self._stage.machine_positions()
        r = float(np.hypot(beam[0], beam[1]))
        # Radial (pincushion) error of the beam optics, in stage space.
        landing = beam * (1.0 + self._distortion * r * r)
        xy = self._matrix @ (landing - sensor) + self._offset
        if self._noise_std > 0:
            xy = xy + self._rng.normal(0.0, self._noise_std, size=2)
        return {
            Channel.POSITION_X.value: float(xy[0]),
            Channel.POSITION_Y.value: float(xy[1]),
            Channel.DIAMETER.value: self._diameter * (1.0 + 0.01 * r),
            Channel.PEAK_INTENSITY.value: self._peak_intensity / (1.0 + 0.01 * r),
            Channel.ELLIPTICITY.value: self._ellipticity,
        }

    def emit_frame(self) -> None:
        """Deliver one frame to every subscriber on the calling thread."""
        frame = self.read_frame()
        with self._cb_lock:
            callbacks = list(self._callbacks)
        for cb in callbacks:
            cb(frame)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_evt.clear()
        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()

    def stop(self, *, wait: bool = True) -> None:
        self._stop_evt.set()
        thread = self._thread
        if wait and thread is not None:
            thread.join(timeout=2.0)

    def _run_loop(self) -> None:
        dt = 1.0 / self._rate_hz
        while not self._stop_evt.is_set():
            t0 = time.monotonic()
            self.emit_frame()
            elapsed = time.monotonic() - t0
            if elapsed < dt:
                self._stop_evt.wait(dt - elapsed)
