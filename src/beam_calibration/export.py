"""Writers for the calibration result table.

All writers emit rows in the order they were recorded and never recompute
anything; they are pure formatting over ``ResultRow`` values.
"""

from __future__ import annotations

import csv
import json
import logging
import math
import time
from collections import defaultdict
from dataclasses import asdict
from pathlib import Path
from typing import Iterable, Sequence

from .calibration import CalibrationResult, ResultRow
from .config import CalibrationConfig

logger = logging.getLogger(__name__)

NMARK_ZERO = "0.00000"
CFM_VERSION = "1.0"
CFM_HEADER = ["row", "column", "zero point", "Min", "Max", "X", "Y"]
DATA_HEADER = [
    "Row",
    "Column",
    "Zero",
    "U_ideal",
    "V_ideal",
    "Deviation U",
    "Deviation V",
    "Diameter",
    "Relative Intensity",
    "Ellipticity",
]


def _open_for_write(path: str | Path):
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    return out_path.open("w", newline="", encoding="utf-8")


def _optional(value: float | None) -> str:
    return "" if value is None else repr(float(value))


def nmark_grid(rows: Iterable[ResultRow]) -> list[list[ResultRow]]:
    """Arrange rows for the Nmark table: bottom grid row first, columns ascending."""

    by_row: dict[int, list[ResultRow]] = defaultdict(list)
    for r in rows:
        by_row[r.row].append(r)
    if not by_row:
        return []

    out: list[list[ResultRow]] = []
    expected_cols: list[int] | None = None
    for row_index in sorted(by_row, reverse=True):
        cells = sorted(by_row[row_index], key=lambda r: r.col)
        cols = [r.col for r in cells]
        if expected_cols is None:
            expected_cols = cols
        elif cols != expected_cols:
            raise ValueError(
                f"Nmark export needs a rectangular grid; row {row_index} has columns {cols}, "
                f"expected {expected_cols}"
            )
        out.append(cells)
    return out


def save_nmark_csv(path: str | Path, rows: Sequence[ResultRow], *, negate: bool = False) -> None:
    """Write the Nmark correction table.

    Each cell is one quoted ``"dU,dV,0.00000"`` triple. Deviations are written
    as measured unless ``negate`` is set.
    """

    sign = -1.0 if negate else 1.0
    table = nmark_grid(rows)
    with _open_for_write(path) as f:
        writer = csv.writer(f, quoting=csv.QUOTE_ALL)
        for cells in table:
            writer.writerow(
                [f"{sign * c.deviation_u + 0.0:.5f},{sign * c.deviation_v + 0.0:.5f},{NMARK_ZERO}" for c in cells]
            )


def save_calibration_file_maker_csv(path: str | Path, rows: Sequence[ResultRow]) -> None:
    """Write the table imported by the calibration file maker.

    ``X``/``Y`` are the actual stage-space positions; ``Y`` is flipped to the
    tool's downward axis.
    """

    with _open_for_write(path) as f:
        writer = csv.writer(f)
        writer.writerow([CFM_VERSION])
        writer.writerow(CFM_HEADER)
        for r in rows:
            writer.writerow(
                [
                    r.row,
                    r.col,
                    1 if r.is_reference else 0,
                    "0.0",
                    "0.0",
                    repr(r.ideal_u + r.deviation_u),
                    repr(-(r.ideal_v + r.deviation_v) + 0.0),
                ]
            )


def save_data_file_csv(path: str | Path, rows: Sequence[ResultRow]) -> None:
    """Write every stored field; channels that were not measured stay empty."""

    with _open_for_write(path) as f:
        writer = csv.writer(f)
        writer.writerow(DATA_HEADER)
        for r in rows:
            writer.writerow(
                [
                    r.row,
                    r.col,
                    1 if r.is_reference else 0,
                    repr(r.ideal_u),
                    repr(r.ideal_v),
                    repr(r.deviation_u),
                    repr(r.deviation_v),
                    _optional(r.diameter),
                    _optional(r.relative_intensity),
                    _optional(r.ellipticity),
                ]
            )


def _parse_optional(raw: str) -> float | None:
    raw = raw.strip()
    return None if raw == "" else float(raw)


def load_data_file_csv(path: str | Path) -> list[ResultRow]:
    """Read a data file written by :func:`save_data_file_csv`."""

    in_path = Path(path)
    out: list[ResultRow] = []
    with in_path.open("r", newline="", encoding="utf-8") as f:
        reader = csv.reader(f)
        header = next(reader, None)
        if header is None or [h.strip() for h in header] != DATA_HEADER:
            raise ValueError(f"{in_path}: not a calibration data file (unexpected header)")
        for line_no, fields in enumerate(reader, start=2):
            if not fields:
                continue
            if len(fields) != len(DATA_HEADER):
                raise ValueError(f"{in_path}:{line_no}: expected {len(DATA_HEADER)} fields, got {len(fields)}")
            out.append(
                ResultRow(
                    row=int(fields[0]),
                    col=int(fields[1]),
                    is_reference=int(fields[2]) == 1,
                    ideal_u=float(fields[3]),
                    ideal_v=float(fields[4]),
                    deviation_u=float(fields[5]),
                    deviation_v=float(fields[6]),
                    diameter=_parse_optional(fields[7]),
                    relative_intensity=_parse_optional(fields[8]),
                    ellipticity=_parse_optional(fields[9]),
                )
            )
    return out


def export_paths(base: str | Path) -> dict[str, Path]:
    """Output file names derived from a single user-supplied base name."""

    base_path = Path(base)
    if base_path.suffix.lower() in {".csv", ".json"}:
        base_path = base_path.with_suffix("")
    stem = base_path.name
    return {
        "nmark": base_path.with_name(f"{stem}_Nmark.csv"),
        "cfm": base_path.with_name(f"{stem}_CalibrationFileMaker.csv"),
        "data": base_path.with_name(f"{stem}_Data.csv"),
        "report": base_path.with_name(f"{stem}_Report.json"),
    }


def _finite_or_none(value: float | None) -> float | None:
    if value is None or not math.isfinite(value):
        return None
    return value


def save_run_report_json(
    path: str | Path,
    result: CalibrationResult,
    config: CalibrationConfig,
) -> None:
    t = result.transform
    config_payload = asdict(config)
    config_payload["channels"] = [c.value for c in config.channels]
    payload = {
        "transform": {"matrix": [[t.a, t.b], [t.c, t.d]], "scale": t.scale},
        "reference": {k: _finite_or_none(v) for k, v in result.reference.as_dict().items()},
        "reference_sample_counts": dict(result.reference.sample_counts),
        "config": config_payload,
        "n_points": result.store.capacity,
        "n_recorded": len(result.store),
        "completed": result.completed,
        "cancelled": result.cancelled,
        "failure": None if result.failure is None else str(result.failure),
        "created_at_unix_s": time.time(),
    }
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def export_all(
    base: str | Path,
    result: CalibrationResult,
    config: CalibrationConfig,
    *,
    nmark_negate: bool = False,
) -> dict[str, Path]:
    """Write every output format next to ``base``.

    The Nmark table is skipped when the recorded rows do not form a full
    rectangle (aborted run or irregular custom grid).
    """

    paths = export_paths(base)
    rows = result.rows
    written: dict[str, Path] = {}
    if result.completed:
        try:
            save_nmark_csv(paths["nmark"], rows, negate=nmark_negate)
            written["nmark"] = paths["nmark"]
        except ValueError as exc:
            logger.warning("Skipping Nmark export: %s", exc)
    else:
        logger.warning("Skipping Nmark export: run recorded %d of %d points", len(rows), result.store.capacity)
    save_calibration_file_maker_csv(paths["cfm"], rows)
    written["cfm"] = paths["cfm"]
    save_data_file_csv(paths["data"], rows)
    written["data"] = paths["data"]
    save_run_report_json(paths["report"], result, config)
    written["report"] = paths["report"]
    return written
