"""Grid calibration of a two-axis stage against a beam-profiling sensor."""

from .calibration import (
    CalibrationResult,
    CalibrationRun,
    ResultRow,
    ResultStore,
    deviation_magnitudes,
)
from .config import CalibrationConfig, load_grid_config, parse_grid_config
from .errors import (
    CalibrationError,
    ConfigError,
    ConfigMissingKey,
    DegenerateCalibration,
    EmptyMeasurementWindow,
    GridFileNotFound,
    MalformedGrid,
)
from .export import (
    export_all,
    load_data_file_csv,
    save_calibration_file_maker_csv,
    save_data_file_csv,
    save_nmark_csv,
    save_run_report_json,
)
from .grid import GridPoint, generate_grid, load_grid_csv, reference_points, save_grid_csv
from .hardware import SimulatedBeamSensor, SimulatedStage
from .interfaces import BeamSensorInterface, SensorFrame, StageInterface
from .measurement import Channel, MeasurementAggregator, RawMeasurement, WindowState
from .transform import TransformMatrix, estimate_transform

__all__ = [
    # Configuration and grid
    "CalibrationConfig",
    "GridPoint",
    "generate_grid",
    "load_grid_config",
    "load_grid_csv",
    "parse_grid_config",
    "reference_points",
    "save_grid_csv",
    # Transform estimation
    "TransformMatrix",
    "estimate_transform",
    # Measurement windows
    "Channel",
    "MeasurementAggregator",
    "RawMeasurement",
    "WindowState",
    # Calibration run
    "CalibrationResult",
    "CalibrationRun",
    "ResultRow",
    "ResultStore",
    "deviation_magnitudes",
    # Export
    "export_all",
    "load_data_file_csv",
    "save_calibration_file_maker_csv",
    "save_data_file_csv",
    "save_nmark_csv",
    "save_run_report_json",
    # Hardware
    "BeamSensorInterface",
    "SensorFrame",
    "SimulatedBeamSensor",
    "SimulatedStage",
    "StageInterface",
    # Errors
    "CalibrationError",
    "ConfigError",
    "ConfigMissingKey",
    "DegenerateCalibration",
    "EmptyMeasurementWindow",
    "GridFileNotFound",
    "MalformedGrid",
]
