"""Power rating computer.

Turns a season's TeamFeatures into offense/defense/net ratings as weighted
sums of league z-scores. Defensive metrics measure what a team concedes, so
their z-scores are sign-inverted before weighting: a positive defensive
rating is always good.

Ratings are raw z-composites unless the scenario sets target_std, in which
case they are centered and rescaled onto a points scale.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Mapping, Optional, Sequence

import pandas as pd

from config.scenarios import (
    ALL_METRICS,
    CONFIDENCE_METRICS,
    DEFENSIVE_YARDAGE_METRICS,
    WeightScenario,
)
from src.data.feature_loader import DataSource, TeamFeatures
from src.utils.normalization import ZScoreStats, compute_all_stats, rescale_ratings, zscore

logger = logging.getLogger(__name__)

# Multiplier on feature coverage for each data source
SOURCE_QUALITY = {
    DataSource.GAME: 1.0,
    DataSource.SEASON: 0.9,
    DataSource.BASELINE: 0.7,
    DataSource.MISSING: 0.3,
}


@dataclass
class TeamRating:
    """Rating output for one team-season."""

    team_id: str
    season: Optional[int]
    model_version: str
    offense_rating: float
    defense_rating: float
    power_rating: float
    confidence: float
    data_source: str
    hfa_team: Optional[float] = None
    hfa_raw: Optional[float] = None
    hfa_n_home: Optional[int] = None
    hfa_n_away: Optional[int] = None
    hfa_shrink_weight: Optional[float] = None


def offensive_index(
    features: TeamFeatures,
    stats: Mapping[str, ZScoreStats],
    weights: Mapping[str, float],
) -> float:
    """Sum of weight * z over the offensive metrics."""
    return sum(w * zscore(features.metric(m), stats[m]) for m, w in weights.items())


def _defensive_weights(
    features: TeamFeatures,
    weights: Mapping[str, float],
    renormalize_missing: bool,
) -> dict[str, float]:
    """Defensive weights for a team, renormalized over success/EPA when it has no yardage data."""
    has_yardage = any(features.metric(m) is not None for m in DEFENSIVE_YARDAGE_METRICS)
    if has_yardage or not renormalize_missing:
        return dict(weights)

    kept = {m: w for m, w in weights.items() if m not in DEFENSIVE_YARDAGE_METRICS}
    total = sum(kept.values())
    if total <= 0:
        return dict(weights)
    return {m: w / total for m, w in kept.items()}


def defensive_index(
    features: TeamFeatures,
    stats: Mapping[str, ZScoreStats],
    weights: Mapping[str, float],
    renormalize_missing: bool = True,
) -> float:
    """Sum of weight * (-z) over the defensive metrics (higher = better defense)."""
    team_weights = _defensive_weights(features, weights, renormalize_missing)
    return -sum(w * zscore(features.metric(m), stats[m]) for m, w in team_weights.items())


def rating_confidence(features: TeamFeatures) -> float:
    """Coverage of the core metrics times the data source quality."""
    present = sum(1 for m in CONFIDENCE_METRICS if features.metric(m) is not None)
    coverage = present / len(CONFIDENCE_METRICS)
    return coverage * SOURCE_QUALITY.get(features.data_source, 0.3)


def compute_ratings(
    vectors: Sequence[TeamFeatures],
    scenario: WeightScenario,
    season: Optional[int] = None,
    model_version: Optional[str] = None,
    strict: bool = False,
) -> list[TeamRating]:
    """Compute ratings for every team in a season.

    Args:
        vectors: One TeamFeatures per team (the z-score population)
        scenario: Weight scenario to apply
        season: Season tag for outputs (defaults to the vectors' season)
        model_version: Version tag for outputs (defaults to scenario name)
        strict: Propagate DegenerateStatisticsError for constant metrics

    Returns:
        TeamRating list sorted by power rating descending
    """
    if not vectors:
        return []

    model_version = model_version or scenario.name
    metrics = [m for m in ALL_METRICS if m in scenario.offensive or m in scenario.defensive]
    stats = compute_all_stats(vectors, metrics, strict=strict)

    ratings = []
    for features in vectors:
        off = offensive_index(features, stats, scenario.offensive)
        dfn = defensive_index(
            features, stats, scenario.defensive, scenario.renormalize_missing_defense
        )
        ratings.append(
            TeamRating(
                team_id=features.team_id,
                season=season if season is not None else features.season,
                model_version=model_version,
                offense_rating=off,
                defense_rating=dfn,
                power_rating=off + dfn,
                confidence=rating_confidence(features),
                data_source=features.data_source.value,
            )
        )

    if scenario.target_std is not None:
        ratings = _rescale(ratings, scenario.target_std)

    ratings.sort(key=lambda r: (-r.power_rating, r.team_id))

    if ratings:
        logger.info(
            f"Computed {len(ratings)} ratings ({model_version}): "
            f"top={ratings[0].team_id} {ratings[0].power_rating:.2f}, "
            f"bottom={ratings[-1].team_id} {ratings[-1].power_rating:.2f}"
        )
    return ratings


def _rescale(ratings: list[TeamRating], target_std: float) -> list[TeamRating]:
    df = pd.DataFrame(
        {
            "offense_rating": [r.offense_rating for r in ratings],
            "defense_rating": [r.defense_rating for r in ratings],
        }
    )
    df = rescale_ratings(df, target_std=target_std)
    for r, off, dfn, total in zip(
        ratings, df["offense_rating"], df["defense_rating"], df["power_rating"]
    ):
        r.offense_rating = float(off)
        r.defense_rating = float(dfn)
        r.power_rating = float(total)
    return ratings


def ratings_to_frame(ratings: Sequence[TeamRating]) -> pd.DataFrame:
    """Ratings as a pandas DataFrame with a 1-based rank column."""
    df = pd.DataFrame([asdict(r) for r in ratings])
    if df.empty:
        return df
    df = df.sort_values(["power_rating", "team_id"], ascending=[False, True]).reset_index(drop=True)
    df.insert(0, "rank", range(1, len(df) + 1))
    return df
