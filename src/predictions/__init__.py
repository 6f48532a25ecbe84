"""Predictions package."""

from .spread_generator import SpreadGenerator, PredictedSpread
from .calibration_curve import CalibrationCurve, fit_calibration_curve

__all__ = [
    "SpreadGenerator",
    "PredictedSpread",
    "CalibrationCurve",
    "fit_calibration_curve",
]
