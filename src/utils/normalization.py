"""Normalization utilities.

Two concerns live here:

- Z-score statistics across a season's feature vectors, used by the power
  rating computer. Population statistics (divide by n), nulls ignored.
- Rescaling of net ratings onto a points scale, so that a difference of two
  ratings can be read as a point margin.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from config.settings import get_settings

logger = logging.getLogger(__name__)


class DegenerateStatisticsError(Exception):
    """Raised in strict mode when a metric has no spread across teams."""


@dataclass(frozen=True)
class ZScoreStats:
    mean: float
    std_dev: float
    n: int


def _is_missing(value) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def compute_zscore_stats(
    vectors: Iterable,
    metric_selector: Callable,
    strict: bool = False,
    min_std: Optional[float] = None,
    metric_name: str = "metric",
) -> ZScoreStats:
    """Population mean and std of one metric across teams.

    Args:
        vectors: Feature vectors (any objects metric_selector accepts)
        metric_selector: Callable returning the metric value or None
        strict: If True, raise DegenerateStatisticsError instead of
            substituting std = 1 for a constant metric
        min_std: Std below this is treated as zero (default from settings)
        metric_name: Used in log and error messages

    Returns:
        ZScoreStats. Empty input gives mean 0, std 1.
    """
    if min_std is None:
        min_std = get_settings().zscore_min_std

    values = [metric_selector(v) for v in vectors]
    values = np.array([float(v) for v in values if not _is_missing(v)], dtype=float)

    if len(values) == 0:
        logger.debug(f"{metric_name}: no values, using mean=0 std=1")
        return ZScoreStats(mean=0.0, std_dev=1.0, n=0)

    mean = float(values.mean())
    std = float(values.std(ddof=0))

    if std < min_std:
        if strict:
            raise DegenerateStatisticsError(
                f"{metric_name} has zero spread across {len(values)} teams (std={std:.3g})"
            )
        logger.warning(
            f"{metric_name} has zero spread across {len(values)} teams; using std=1"
        )
        std = 1.0

    return ZScoreStats(mean=mean, std_dev=std, n=len(values))


def zscore(value: Optional[float], stats: ZScoreStats) -> float:
    """Z-score of a value; missing values map to exactly 0 (league average)."""
    if _is_missing(value):
        return 0.0
    return (value - stats.mean) / stats.std_dev


def compute_all_stats(
    vectors: Sequence,
    metrics: Iterable[str],
    strict: bool = False,
) -> dict[str, ZScoreStats]:
    """ZScoreStats for each named attribute of the vectors."""
    return {
        m: compute_zscore_stats(
            vectors, lambda v, m=m: getattr(v, m), strict=strict, metric_name=m
        )
        for m in metrics
    }


def rescale_ratings(
    df: pd.DataFrame,
    off_col: str = "offense_rating",
    def_col: str = "defense_rating",
    total_col: str = "power_rating",
    target_std: Optional[float] = None,
) -> pd.DataFrame:
    """Center ratings on zero and scale the net rating to a target std.

    Offense and defense are each centered on their own mean and multiplied by
    the same factor, so total = off + def holds after rescaling.

    Args:
        df: DataFrame with offense and defense columns
        off_col: Offense column (higher = better)
        def_col: Defense column (higher = better)
        total_col: Output column for the net rating
        target_std: Population std of the net rating after scaling
            (default from settings)

    Returns:
        Copy of df with the three columns replaced by rescaled values
    """
    if target_std is None:
        target_std = get_settings().rating_target_std
    missing = [c for c in (off_col, def_col) if c not in df.columns]
    if missing:
        raise ValueError(f"Missing rating columns: {missing}")

    df = df.copy()
    if df.empty:
        df[total_col] = pd.Series(dtype=float)
        return df

    raw_off = df[off_col].to_numpy(dtype=float)
    raw_def = df[def_col].to_numpy(dtype=float)

    centered_off = raw_off - raw_off.mean()
    centered_def = raw_def - raw_def.mean()
    base_total = centered_off + centered_def

    current_std = base_total.std(ddof=0)
    if current_std == 0:
        scale = 1.0
        logger.warning("Net ratings have zero spread; skipping rescale")
    else:
        scale = target_std / current_std

    df[off_col] = centered_off * scale
    df[def_col] = centered_def * scale
    df[total_col] = df[off_col] + df[def_col]

    logger.info(
        f"Rescaled ratings: scale={scale:.3f}x, std={df[total_col].std(ddof=0):.2f}, "
        f"range=[{df[total_col].min():.1f}, {df[total_col].max():.1f}]"
    )
    return df


def verify_rescaling(
    df: pd.DataFrame,
    off_col: str = "offense_rating",
    def_col: str = "defense_rating",
    total_col: str = "power_rating",
) -> dict:
    """Check that rescaled ratings are centered and total = off + def."""
    results = {
        "off_mean": df[off_col].mean(),
        "def_mean": df[def_col].mean(),
        "total_mean": df[total_col].mean(),
        "total_std": df[total_col].std(ddof=0),
        "total_min": df[total_col].min(),
        "total_max": df[total_col].max(),
        "relationship_error": (df[total_col] - (df[off_col] + df[def_col])).abs().max(),
    }
    results["means_centered"] = all(
        abs(results[f"{c}_mean"]) < 0.001 for c in ["off", "def", "total"]
    )
    results["relationship_valid"] = results["relationship_error"] < 1e-6
    return results
