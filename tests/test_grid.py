from __future__ import annotations

import pytest

from beam_calibration.config import CalibrationConfig
from beam_calibration.errors import GridFileNotFound, MalformedGrid
from beam_calibration.grid import GRID_HEADER, GridPoint, generate_grid, load_grid_csv, reference_points, save_grid_csv


def _config(num_cols: int = 3, num_rows: int = 3, delta_u: float = 1.0, delta_v: float = 1.0) -> CalibrationConfig:
    return CalibrationConfig(
        num_cols=num_cols,
        num_rows=num_rows,
        delta_u=delta_u,
        delta_v=delta_v,
        measure_window_ms=100,
    )


@pytest.mark.parametrize("num_rows,num_cols", [(1, 1), (1, 4), (3, 3), (4, 5), (6, 2), (7, 7)])
def test_generate_covers_grid_with_single_centered_reference(num_rows, num_cols):
    points = generate_grid(_config(num_cols=num_cols, num_rows=num_rows))

    assert len(points) == num_rows * num_cols
    assert len({(p.row, p.col) for p in points}) == len(points)

    refs = reference_points(points)
    assert len(refs) == 1
    assert (refs[0].row, refs[0].col) == ((num_rows - 1) // 2, (num_cols - 1) // 2)


def test_generate_reference_sits_at_stage_origin_for_even_counts():
    points = generate_grid(_config(num_cols=4, num_rows=2, delta_u=0.5, delta_v=2.0))

    ref = reference_points(points)[0]
    assert (ref.target_u, ref.target_v) == (0.0, 0.0)
    assert min(p.target_u for p in points) == -0.5
    assert max(p.target_u for p in points) == 1.0
    assert max(p.target_v for p in points) == 0.0
    assert min(p.target_v for p in points) == -2.0


def test_generate_serpentine_order_reverses_each_row():
    points = generate_grid(_config(num_cols=4, num_rows=3))

    rows: dict[int, list[int]] = {}
    for p in points:
        rows.setdefault(p.row, []).append(p.col)

    assert list(rows) == [0, 1, 2]
    assert rows[0] == [0, 1, 2, 3]
    assert rows[1] == [3, 2, 1, 0]
    assert rows[2] == [0, 1, 2, 3]


def test_generate_targets_follow_index_offsets():
    points = generate_grid(_config(num_cols=3, num_rows=3, delta_u=2.0, delta_v=0.5))

    by_index = {(p.row, p.col): p for p in points}
    assert (by_index[(0, 0)].target_u, by_index[(0, 0)].target_v) == (-2.0, 0.5)
    assert (by_index[(2, 2)].target_u, by_index[(2, 2)].target_v) == (2.0, -0.5)


def test_save_then_load_preserves_points_and_order(tmp_path):
    points = generate_grid(_config(num_cols=5, num_rows=4, delta_u=0.1, delta_v=0.3))
    path = tmp_path / "grid" / "GridCoordinates.csv"

    save_grid_csv(path, points)

    assert path.read_text(encoding="utf-8").splitlines()[0] == ",".join(GRID_HEADER)
    assert load_grid_csv(path) == points


def test_load_keeps_file_order_and_allows_missing_reference(tmp_path):
    path = tmp_path / "custom.csv"
    path.write_text(
        "Row, Column, Zero, U-Coordinate, V-Coordinate\n"
        "1, 1, 0, 5.0, -5.0\n"
        "0, 0, 0, -5.0, 5.0\n"
        "\n",
        encoding="utf-8",
    )

    points = load_grid_csv(path)

    assert points == [
        GridPoint(row=1, col=1, is_reference=False, target_u=5.0, target_v=-5.0),
        GridPoint(row=0, col=0, is_reference=False, target_u=-5.0, target_v=5.0),
    ]


def test_load_missing_file_raises_not_found(tmp_path):
    with pytest.raises(GridFileNotFound):
        load_grid_csv(tmp_path / "nope.csv")


@pytest.mark.parametrize(
    "line",
    [
        "0, 0, 1, 0.0",
        "0, 0, 1, 0.0, 0.0, 7",
        "a, 0, 1, 0.0, 0.0",
        "0, 0, 1, x, 0.0",
        "0, 0, 2, 0.0, 0.0",
    ],
)
def test_load_rejects_malformed_rows(tmp_path, line):
    path = tmp_path / "bad.csv"
    path.write_text("Row,Column,Zero,U-Coordinate,V-Coordinate\n" + line + "\n", encoding="utf-8")

    with pytest.raises(MalformedGrid):
        load_grid_csv(path)


def test_load_rejects_duplicate_indices(tmp_path):
    path = tmp_path / "dup.csv"
    path.write_text(
        "Row,Column,Zero,U-Coordinate,V-Coordinate\n0,0,1,0.0,0.0\n0,0,0,1.0,0.0\n",
        encoding="utf-8",
    )

    with pytest.raises(MalformedGrid, match="duplicate"):
        load_grid_csv(path)
