from __future__ import annotations

from typing import Sequence

import numpy as np

from .calibration import ResultRow, deviation_magnitudes


def deviation_segments(rows: Sequence[ResultRow], gain: float = 1.0) -> tuple[np.ndarray, np.ndarray]:
    """Line segments from each ideal point to its exaggerated measured point.

    Returns ``(xs, ys)`` with two entries per row, suitable for a curve drawn
    with ``connect="pairs"``.
    """

    if gain <= 0:
        raise ValueError("gain must be > 0")
    xs = np.empty(2 * len(rows), dtype=float)
    ys = np.empty(2 * len(rows), dtype=float)
    for i, r in enumerate(rows):
        xs[2 * i] = r.ideal_u
        ys[2 * i] = r.ideal_v
        xs[2 * i + 1] = r.ideal_u + gain * r.deviation_u
        ys[2 * i + 1] = r.ideal_v + gain * r.deviation_v
    return xs, ys


def launch_deviation_viewer(rows: Sequence[ResultRow], *, gain: float = 100.0, title: str = "Grid deviation") -> None:
    """Show ideal grid points and deviation vectors in a pyqtgraph window."""
    import pyqtgraph as pg
    from pyqtgraph.Qt import QtWidgets

    app = QtWidgets.QApplication.instance() or QtWidgets.QApplication([])
    win = pg.PlotWidget(title=f"{title} (deviation x{gain:g})")
    win.setAspectLocked(True)
    win.showGrid(x=True, y=True, alpha=0.3)
    win.setLabel("bottom", "U", units="mm")
    win.setLabel("left", "V", units="mm")

    ideal = [r for r in rows if not r.is_reference]
    refs = [r for r in rows if r.is_reference]
    win.plot(
        [r.ideal_u for r in ideal],
        [r.ideal_v for r in ideal],
        pen=None,
        symbol="o",
        symbolSize=6,
        symbolBrush=pg.mkBrush(180, 180, 180),
    )
    if refs:
        win.plot(
            [r.ideal_u for r in refs],
            [r.ideal_v for r in refs],
            pen=None,
            symbol="+",
            symbolSize=14,
            symbolPen=pg.mkPen("g", width=2),
        )

    xs, ys = deviation_segments(rows, gain)
    win.addItem(pg.PlotCurveItem(xs, ys, connect="pairs", pen=pg.mkPen("r", width=2)))

    mags = deviation_magnitudes(rows)
    if mags.size:
        win.setTitle(f"{title} (deviation x{gain:g}, max {float(mags.max()):.5f} mm)")

    win.resize(900, 800)
    win.show()
    app.exec()
