from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
import time
from pathlib import Path
from typing import Callable

from .calibration import CalibrationResult, CalibrationRun, deviation_magnitudes
from .config import DEFAULT_CONFIG_PATH, CalibrationConfig, load_grid_config
from .errors import CalibrationError, GridFileNotFound, MalformedGrid
from .export import export_all, load_data_file_csv
from .grid import DEFAULT_GRID_PATH, GridPoint, generate_grid, load_grid_csv, save_grid_csv
from .hardware import SimulatedBeamSensor, SimulatedStage
from .measurement import ALL_CHANNELS, Channel

InputFn = Callable[[str], str]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run a beam-profiler grid calibration sweep")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Grid configuration file (<Name = Value> lines)")
    parser.add_argument(
        "--grid-file",
        default=DEFAULT_GRID_PATH,
        help="Cached grid coordinates CSV; generated from the configuration when missing",
    )
    parser.add_argument("--output-dir", default=".", help="Directory for result files")
    parser.add_argument(
        "--backend",
        choices=["simulate"],
        default="simulate",
        help="Stage/sensor backend",
    )
    parser.add_argument(
        "--channels",
        nargs="+",
        choices=[c.value for c in ALL_CHANNELS],
        default=[c.value for c in ALL_CHANNELS],
        help="Sensor channels to average (position_x and position_y are required)",
    )
    parser.add_argument("--settle-ms", type=int, default=None, help="Override the settle time after each move")
    parser.add_argument(
        "--nmark-negate",
        action="store_true",
        help="Write negated deviations to the Nmark table (default writes them as measured)",
    )
    parser.add_argument("--show-plot", action="store_true", help="Open a pyqtgraph deviation plot after the run")
    parser.add_argument("--plot-gain", type=float, default=100.0, help="Deviation exaggeration in the plot")
    parser.add_argument(
        "--replot",
        metavar="DATA_CSV",
        default=None,
        help="Plot a data file from an earlier run and exit without calibrating",
    )
    parser.add_argument("--log-level", default="WARNING", help="Python logging level")
    parser.add_argument("--sim-rotation-deg", type=float, default=1.5, help="Simulated sensor rotation vs. stage")
    parser.add_argument("--sim-scale", type=float, default=0.8, help="Simulated sensor units per mm")
    parser.add_argument("--sim-noise", type=float, default=0.0005, help="Simulated centroid noise (sensor units)")
    parser.add_argument("--sim-distortion", type=float, default=2e-5, help="Simulated radial distortion (1/mm^2)")
    parser.add_argument("--sim-rate-hz", type=float, default=100.0, help="Simulated sensor frame rate")
    parser.add_argument("--seed", type=int, default=None, help="Seed for the simulated sensor noise")
    return parser


def ask(prompt: str, choices: tuple[str, ...], input_fn: InputFn = input) -> str:
    """Prompt until the answer is one of ``choices`` (case-insensitive)."""
    answer = input_fn(prompt).strip().lower()
    while answer not in choices:
        answer = input_fn(f"Invalid answer! Type {' or '.join(choices)}: ").strip().lower()
    return answer


def wait_for_start(input_fn: InputFn = input) -> bool:
    print("Set up the beam camera as usual.", file=sys.stderr)
    print("Set grid parameters in the grid configuration file.", file=sys.stderr)
    print("The current location will be the zero point of the calibration.", file=sys.stderr)
    answer = ask(
        "Type start to start the calibration and cancel to terminate the program: ",
        ("start", "cancel"),
        input_fn,
    )
    return answer == "start"


def _generate_and_cache(config: CalibrationConfig, grid_file: str | Path) -> list[GridPoint]:
    points = generate_grid(config)
    save_grid_csv(grid_file, points)
    print(f"Generated {len(points)}-point grid and saved it to {grid_file}", file=sys.stderr)
    return points


def import_custom_grid(path: str | Path, config: CalibrationConfig, input_fn: InputFn = input) -> list[GridPoint]:
    """Load a custom grid, prompting for another path on failure.

    Typing ``generate`` at the retry prompt falls back to a procedural grid.
    """

    current = str(path)
    while True:
        try:
            points = load_grid_csv(current)
        except (GridFileNotFound, MalformedGrid) as exc:
            print(f"Could not import grid: {exc}", file=sys.stderr)
            answer = input_fn("Enter another grid file path, or type generate to build a grid from the configuration: ").strip()
            if answer.lower() == "generate":
                return generate_grid(config)
            if answer:
                current = answer
            continue
        print(f"Imported {len(points)} grid points from {current}", file=sys.stderr)
        return points


def select_grid(config: CalibrationConfig, grid_file: str | Path, input_fn: InputFn = input) -> list[GridPoint]:
    if config.coordinates_file_path:
        answer = ask(
            f"Import custom grid from {config.coordinates_file_path}? (yes/no): ",
            ("yes", "no"),
            input_fn,
        )
        if answer == "yes":
            return import_custom_grid(config.coordinates_file_path, config, input_fn)

    if not Path(grid_file).exists():
        return _generate_and_cache(config, grid_file)

    answer = ask(f"A saved grid exists at {grid_file}. Regenerate it? (yes/no): ", ("yes", "no"), input_fn)
    if answer == "yes":
        return _generate_and_cache(config, grid_file)
    try:
        return load_grid_csv(grid_file)
    except GridFileNotFound:
        return _generate_and_cache(config, grid_file)
    except MalformedGrid as exc:
        print(f"Saved grid is unusable: {exc}", file=sys.stderr)
        return import_custom_grid(grid_file, config, input_fn)


def prompt_output_name(input_fn: InputFn = input) -> str:
    default = time.strftime("Calibration_%Y%m%d_%H%M%S")
    answer = input_fn(f"Output file name [{default}]: ").strip()
    return answer or default


def replot(path: str | Path, gain: float) -> int:
    try:
        rows = load_data_file_csv(path)
    except (OSError, ValueError) as exc:
        print(f"Error: could not read data file: {exc}", file=sys.stderr)
        return 1
    print(f"Loaded {len(rows)} points from {path}", file=sys.stderr)

    from .viewer import launch_deviation_viewer

    launch_deviation_viewer(rows, gain=gain, title=f"Grid deviation: {Path(path).name}")
    return 0


def _print_summary(result: CalibrationResult) -> None:
    t = result.transform
    mags = deviation_magnitudes(result.rows)
    print(
        f"transform=[[{t.a:+.5f}, {t.b:+.5f}], [{t.c:+.5f}, {t.d:+.5f}]] scale={t.scale:.5f} "
        f"points={len(result.store)}/{result.store.capacity}"
        + (f" max_deviation={float(mags.max()):.5f} mm" if mags.size else "")
    )
    if result.failure is not None:
        print(f"Warning: calibration stopped early: {result.failure}", file=sys.stderr)


def _progress(index: int, total: int, point: GridPoint, row) -> None:
    status = "ok" if row is not None else "FAILED"
    print(f"[{index}/{total}] row={point.row} column={point.col} {status}", file=sys.stderr)


def _build_backend(args) -> tuple[SimulatedStage, SimulatedBeamSensor]:
    stage = SimulatedStage()
    sensor = SimulatedBeamSensor.rotated(
        stage,
        angle_deg=args.sim_rotation_deg,
        scale=args.sim_scale,
        noise_std=args.sim_noise,
        distortion_per_mm2=args.sim_distortion,
        rate_hz=args.sim_rate_hz,
        seed=args.seed,
    )
    return stage, sensor


def main(argv: list[str] | None = None, input_fn: InputFn = input) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.replot is not None:
        return replot(args.replot, args.plot_gain)

    config = load_grid_config(args.config, channels=tuple(Channel(c) for c in args.channels))
    if args.settle_ms is not None:
        config = dataclasses.replace(config, settle_ms=args.settle_ms)

    if not wait_for_start(input_fn):
        return 0

    points = select_grid(config, args.grid_file, input_fn)
    stage, sensor = _build_backend(args)

    sensor.start()
    try:
        run = CalibrationRun(stage, sensor, config)
        try:
            result = run.run(points, on_step=_progress)
        except CalibrationError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            print("Calibration aborted; no results were written.", file=sys.stderr)
            return 0
    finally:
        sensor.stop()

    _print_summary(result)

    name = prompt_output_name(input_fn)
    try:
        written = export_all(Path(args.output_dir) / name, result, config, nmark_negate=args.nmark_negate)
    except (OSError, CalibrationError) as exc:
        print(f"Error: could not write results: {exc}", file=sys.stderr)
        return 0
    for kind, path in written.items():
        print(f"Wrote {kind}: {path}", file=sys.stderr)

    if args.show_plot:
        from .viewer import launch_deviation_viewer

        launch_deviation_viewer(result.rows, gain=args.plot_gain)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
