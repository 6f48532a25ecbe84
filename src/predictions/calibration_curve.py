"""Polynomial calibration curve mapping a rating difference onto market points.

    market ≈ c0 + c1*x + c2*x² (+ ...)

fit by a closed-form weighted least-squares solve. Used to check whether the
rating -> points mapping is linear (c2 ≈ 0, c1 ≈ 1) or compressed at the tails.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from sklearn.linear_model import LinearRegression

logger = logging.getLogger(__name__)


@dataclass
class CalibrationCurve:
    """Fitted polynomial; coefficients are ordered (c0, c1, ..., c_degree)."""

    coefficients: tuple
    degree: int
    r2: float
    rmse: float
    n: int

    def predict(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        return sum(c * x ** k for k, c in enumerate(self.coefficients))

    def describe(self) -> str:
        terms = " + ".join(
            f"{c:.4f}" if k == 0 else f"{c:.4f}·x" if k == 1 else f"{c:.5f}·x^{k}"
            for k, c in enumerate(self.coefficients)
        )
        return f"y = {terms} (R²={self.r2:.3f}, RMSE={self.rmse:.2f}, n={self.n})"


def _design(x: np.ndarray, degree: int) -> np.ndarray:
    return np.column_stack([x ** k for k in range(1, degree + 1)])


def fit_calibration_curve(
    x: Sequence[float],
    y: Sequence[float],
    degree: int = 2,
    weights: Optional[Sequence[float]] = None,
) -> CalibrationCurve:
    """Fit a polynomial calibration curve.

    Args:
        x: Predictor (e.g. rating difference)
        y: Target (e.g. market spread, hma frame)
        degree: Polynomial degree (>= 1)
        weights: Optional per-observation weights

    Returns:
        CalibrationCurve

    Raises:
        ValueError: on mismatched lengths, degree < 1, or fewer points than
            coefficients
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if x.shape != y.shape:
        raise ValueError(f"x and y differ in length: {len(x)} vs {len(y)}")
    if degree < 1:
        raise ValueError(f"degree must be >= 1, got {degree}")
    if len(x) < degree + 1:
        raise ValueError(f"Need at least {degree + 1} points for degree {degree}, got {len(x)}")

    sample_weight = None
    if weights is not None:
        sample_weight = np.asarray(weights, dtype=float)
        if sample_weight.shape != x.shape:
            raise ValueError("weights must match x in length")

    X = _design(x, degree)
    model = LinearRegression()
    model.fit(X, y, sample_weight=sample_weight)

    coefficients = (float(model.intercept_),) + tuple(float(c) for c in model.coef_)
    residual = y - model.predict(X)
    if sample_weight is None:
        rmse = float(np.sqrt(np.mean(residual ** 2)))
    else:
        rmse = float(np.sqrt(np.average(residual ** 2, weights=sample_weight)))

    curve = CalibrationCurve(
        coefficients=coefficients,
        degree=degree,
        r2=float(model.score(X, y, sample_weight=sample_weight)),
        rmse=rmse,
        n=len(x),
    )
    logger.info(f"Calibration curve: {curve.describe()}")
    return curve
