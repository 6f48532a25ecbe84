"""Canonical rating generation: the single source of truth.

Every consumer (show_ratings.py, calibration_audit.py, build_mftr.py) goes
through this module so that feature loading, rating, HFA and market audits
are wired the same way everywhere.
"""

import logging
from typing import Mapping, Optional, Sequence

import pandas as pd
import polars as pl

from config.scenarios import WeightScenario, get_scenario
from src.adjustments.home_field import HomeFieldAdvantage, TeamHFA, attach_to_ratings
from src.calibration.diagnostics import CalibrationReport, build_audit_frame, run_calibration
from src.data.consensus import attach_consensus, build_consensus_lines
from src.data.feature_loader import FeatureLoader, get_data_source_summary
from src.data.feature_store import FeatureStoreReader
from src.models.mftr import MFTRSolution, build_mftr, cross_validate_lambda
from src.models.power_ratings import TeamRating, compute_ratings

logger = logging.getLogger(__name__)


def generate_ratings(
    season: int,
    reader: FeatureStoreReader,
    team_ids: Optional[Sequence[str]] = None,
    scenario: Optional[WeightScenario] = None,
    games: Optional[pl.DataFrame] = None,
    model_version: Optional[str] = None,
    fbs_teams: Optional[Sequence[str]] = None,
    max_workers: Optional[int] = None,
) -> tuple[list[TeamRating], dict]:
    """Generate power ratings (and team HFA when games are given) for a season.

    Args:
        season: Season year
        reader: Feature store reader
        team_ids: Teams to rate. If None, the reader must provide team_ids(season).
        scenario: Weight scenario (default "v1_points")
        games: Game results frame; when given, team HFA is estimated and
            attached to the ratings
        model_version: Version tag (default scenario name)
        fbs_teams: Division set used for HFA eligibility
        max_workers: Feature loading concurrency

    Returns:
        (ratings sorted by power desc, meta dict with data_sources,
        league_hfa, n_teams, model_version, point_scaled)
    """
    scenario = scenario or get_scenario("v1_points")
    if team_ids is None:
        if not hasattr(reader, "team_ids"):
            raise ValueError("team_ids is required when the reader cannot enumerate teams")
        team_ids = reader.team_ids(season)

    loader = FeatureLoader(reader, max_workers=max_workers)
    features = loader.load_season(list(team_ids), season)
    ratings = compute_ratings(features, scenario, season=season, model_version=model_version)

    meta = {
        "season": season,
        "model_version": model_version or scenario.name,
        "n_teams": len(ratings),
        "data_sources": get_data_source_summary(features),
        "point_scaled": scenario.is_point_scaled,
        "league_hfa": None,
        "hfa": {},
    }

    if games is not None:
        if not scenario.is_point_scaled:
            logger.warning(
                f"Scenario {scenario.name!r} is unscaled; HFA needs point-scale ratings, skipping"
            )
        elif games.height == 0:
            logger.warning(f"No game results for {season}; skipping HFA")
        else:
            estimator = HomeFieldAdvantage()
            hfa = estimator.compute_season_hfa(
                season,
                games,
                {r.team_id: r.power_rating for r in ratings},
                fbs_teams=fbs_teams,
            )
            attach_to_ratings(ratings, hfa)
            meta["league_hfa"] = estimator.league_mean
            meta["hfa"] = hfa

    logger.info(
        f"Generated {len(ratings)} ratings for {season} ({meta['model_version']}); "
        f"sources {meta['data_sources']}"
    )
    return ratings, meta


def _season_window(games: pl.DataFrame, season: int, weeks: Optional[tuple]) -> pl.DataFrame:
    if "season" in games.columns:
        games = games.filter(pl.col("season") == season)
    if weeks is not None:
        start, end = weeks
        games = games.filter((pl.col("week") >= start) & (pl.col("week") <= end))
    return games


def run_market_audit(
    season: int,
    ratings: Sequence[TeamRating],
    hfa: Mapping[str, TeamHFA],
    games: pl.DataFrame,
    quotes: pl.DataFrame,
    weeks: Optional[tuple] = None,
    kickoffs: Optional[Mapping] = None,
) -> CalibrationReport:
    """Check ratings against market consensus and return the gate report."""
    window = _season_window(games, season, weeks)
    consensus = build_consensus_lines(quotes, kickoffs=kickoffs)
    frame = build_audit_frame(
        window,
        {r.team_id: r.power_rating for r in ratings},
        hfa,
        consensus,
    )
    return run_calibration(frame)


def fit_market_ratings(
    season: int,
    games: pl.DataFrame,
    quotes: pl.DataFrame,
    weeks: Optional[tuple] = None,
    lam: Optional[float] = None,
    cross_validate: bool = False,
    prior: Optional[Mapping[str, float]] = None,
    max_abs_spread: Optional[float] = None,
) -> tuple[MFTRSolution, Optional[pd.DataFrame]]:
    """Build consensus lines and fit MFTR for a window.

    Returns:
        (solution, λ cross-validation table or None)
    """
    consensus = build_consensus_lines(quotes)
    training = attach_consensus(_season_window(games, season, weeks), consensus)

    cv_table = None
    if cross_validate:
        lam, cv_table = cross_validate_lambda(
            training, season, weeks, max_abs_spread=max_abs_spread, prior=prior
        )

    solution = build_mftr(
        training,
        season,
        weeks,
        lam=lam,
        max_abs_spread=max_abs_spread,
        prior=prior,
    )
    return solution, cv_table
