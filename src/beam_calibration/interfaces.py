from __future__ import annotations

from typing import Callable, Mapping, Protocol

# One scalar per channel name, delivered once per sensor frame.
SensorFrame = Mapping[str, float]
FrameCallback = Callable[[SensorFrame], None]


class StageInterface(Protocol):
    """Beam-positioning axes (U/V) plus the axes that carry the sensor.

    Coordinates are relative to the origin set by :meth:`set_zero`.
    """

    def set_zero(self) -> None:
        """Make the current physical position the coordinate origin."""

    def move_to_abs(self, u_mm: float, v_mm: float, feedrate_mm_s: float) -> None:
        """Coordinated move: beam to (u, v) with the sensor following it.

        On an ideal machine the beam stays on the sensor's reference spot, so
        anything the sensor sees afterwards is placement error.
        """

    def move_beam_abs(self, u_mm: float, v_mm: float, feedrate_mm_s: float) -> None:
        """Move only the beam axes; the sensor stays at the origin."""

    def wait_for_motion_done(self) -> None:
        ...


class BeamSensorInterface(Protocol):
    def subscribe(self, callback: FrameCallback) -> None:
        ...

    def unsubscribe(self, callback: FrameCallback) -> None:
        ...
