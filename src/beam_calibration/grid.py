from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from pathlib import Path

from .config import CalibrationConfig
from .errors import GridFileNotFound, MalformedGrid

logger = logging.getLogger(__name__)

DEFAULT_GRID_PATH = "GridCoordinates.csv"
GRID_HEADER = ["Row", "Column", "Zero", "U-Coordinate", "V-Coordinate"]


@dataclass(frozen=True, slots=True)
class GridPoint:
    row: int
    col: int
    is_reference: bool
    target_u: float
    target_v: float


def center_index(count: int) -> int:
    return (count - 1) // 2


def generate_grid(config: CalibrationConfig) -> list[GridPoint]:
    """Build the grid in serpentine order.

    Rows run top to bottom; even rows go left to right and odd rows right to
    left so the stage never has to fly back across the field between rows.
    The centre point is the reference and sits at stage (0, 0).
    """

    center_row = center_index(config.num_rows)
    center_col = center_index(config.num_cols)
    points: list[GridPoint] = []
    for row in range(config.num_rows):
        cols = range(config.num_cols)
        if row % 2 == 1:
            cols = reversed(cols)
        for col in cols:
            points.append(
                GridPoint(
                    row=row,
                    col=col,
                    is_reference=(row == center_row and col == center_col),
                    target_u=(col - center_col) * config.delta_u,
                    target_v=(center_row - row) * config.delta_v,
                )
            )
    return points


def reference_points(points: list[GridPoint]) -> list[GridPoint]:
    return [p for p in points if p.is_reference]


def save_grid_csv(path: str | Path, points: list[GridPoint]) -> None:
    """Write grid points so a generated grid can be reused on later runs."""

    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(GRID_HEADER)
        for p in points:
            writer.writerow([p.row, p.col, 1 if p.is_reference else 0, repr(p.target_u), repr(p.target_v)])


def _parse_flag(raw: str) -> bool:
    value = int(raw)
    if value not in (0, 1):
        raise ValueError(f"reference flag must be 0 or 1, got {raw!r}")
    return value == 1


def load_grid_csv(path: str | Path) -> list[GridPoint]:
    """Read a grid file. File order is kept as traversal order."""

    in_path = Path(path)
    if not in_path.is_file():
        raise GridFileNotFound(f"Grid coordinates file not found: {in_path}")

    points: list[GridPoint] = []
    seen: dict[tuple[int, int], int] = {}
    with in_path.open("r", newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        header = next(reader, None)
        if header is None:
            raise MalformedGrid(f"{in_path}: file is empty")
        for line_no, fields in enumerate(reader, start=2):
            if not fields or all(not v.strip() for v in fields):
                continue
            if len(fields) != len(GRID_HEADER):
                raise MalformedGrid(
                    f"{in_path}:{line_no}: expected {len(GRID_HEADER)} fields, got {len(fields)}"
                )
            try:
                point = GridPoint(
                    row=int(fields[0]),
                    col=int(fields[1]),
                    is_reference=_parse_flag(fields[2]),
                    target_u=float(fields[3]),
                    target_v=float(fields[4]),
                )
            except ValueError as exc:
                raise MalformedGrid(f"{in_path}:{line_no}: {exc}") from exc

            key = (point.row, point.col)
            if key in seen:
                raise MalformedGrid(
                    f"{in_path}:{line_no}: duplicate grid index (row={point.row}, column={point.col}), "
                    f"first seen on line {seen[key]}"
                )
            seen[key] = line_no
            points.append(point)

    if not points:
        raise MalformedGrid(f"{in_path}: no grid points")
    n_ref = len(reference_points(points))
    if n_ref != 1:
        logger.warning("%s defines %d reference points (expected 1)", in_path, n_ref)
    return points
