"""Calibration diagnostics package."""

from .diagnostics import CalibrationGateFailure, CalibrationReport, assert_promotable, run_calibration

__all__ = [
    "CalibrationGateFailure",
    "CalibrationReport",
    "assert_promotable",
    "run_calibration",
]
