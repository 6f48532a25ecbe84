"""Feature store read contract and a polars-backed implementation.

The store holds raw per-team statistical records at three granularities:

1. Game level   - one row per (team, game) with per-game efficiency metrics
2. Season level - one aggregate row per (team, season)
3. Baseline     - a prior model's (offense, defense) season rating

plus talent and recruiting records. The core only reads from it.
"""

import logging
from dataclasses import dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

import polars as pl

from config.scenarios import ALL_METRICS, EFFICIENCY_METRICS

logger = logging.getLogger(__name__)


@dataclass
class GameStatRecord:
    """Per-game efficiency metrics for one team."""

    team_id: str
    season: int
    game_id: str
    week: int
    ypp_off: Optional[float] = None
    success_off: Optional[float] = None
    epa_off: Optional[float] = None
    pace_off: Optional[float] = None
    pass_ypa_off: Optional[float] = None
    rush_ypc_off: Optional[float] = None
    ypp_def: Optional[float] = None
    success_def: Optional[float] = None
    epa_def: Optional[float] = None
    pace_def: Optional[float] = None
    pass_ypa_def: Optional[float] = None
    rush_ypc_def: Optional[float] = None
    updated_at: Optional[datetime] = None

    def has_efficiency_data(self) -> bool:
        return any(getattr(self, m) is not None for m in EFFICIENCY_METRICS)


@dataclass
class SeasonStatRecord:
    """Season aggregate metrics for one team."""

    team_id: str
    season: int
    ypp_off: Optional[float] = None
    success_off: Optional[float] = None
    epa_off: Optional[float] = None
    pace_off: Optional[float] = None
    pass_ypa_off: Optional[float] = None
    rush_ypc_off: Optional[float] = None
    ypp_def: Optional[float] = None
    success_def: Optional[float] = None
    epa_def: Optional[float] = None
    pace_def: Optional[float] = None
    pass_ypa_def: Optional[float] = None
    rush_ypc_def: Optional[float] = None
    created_at: Optional[datetime] = None


@dataclass
class BaselineRatingRecord:
    """A prior model's season rating for one team."""

    team_id: str
    season: int
    model_version: str
    offense_rating: Optional[float] = None
    defense_rating: Optional[float] = None
    created_at: Optional[datetime] = None


@dataclass
class TalentRecord:
    team_id: str
    season: int
    talent_composite: Optional[float] = None
    blue_chips_pct: Optional[float] = None


@dataclass
class CommitsRecord:
    team_id: str
    season: int
    commits_total: int = 0
    five_star_commits: int = 0
    four_star_commits: int = 0
    three_star_commits: int = 0


class FeatureStoreReader(Protocol):
    """Read contract the feature loader depends on."""

    def get_game_stats(self, team_id: str, season: int, limit: int) -> list[GameStatRecord]:
        """Most recent game-level records with at least one efficiency metric."""
        ...

    def get_season_stats(self, team_id: str, season: int) -> Optional[SeasonStatRecord]:
        ...

    def get_baseline_rating(
        self, team_id: str, season: int, model_version: str
    ) -> Optional[BaselineRatingRecord]:
        ...

    def get_talent(self, team_id: str, season: int) -> Optional[TalentRecord]:
        ...

    def get_commits(self, team_id: str, season: int) -> Optional[CommitsRecord]:
        ...

    def count_final_games(self, team_id: str, season: int) -> int:
        ...


# Required columns per frame (metric columns are optional and default to null)
REQUIRED_COLUMNS = {
    "game_stats": ["team_id", "season", "game_id", "week"],
    "season_stats": ["team_id", "season"],
    "baseline_ratings": ["team_id", "season", "model_version"],
    "talent": ["team_id", "season"],
    "commits": ["team_id", "season"],
    "games": [
        "season", "week", "home_team_id", "away_team_id",
        "home_score", "away_score", "neutral_site", "status",
    ],
}


def _validate_columns(name: str, df: pl.DataFrame) -> None:
    missing = [c for c in REQUIRED_COLUMNS[name] if c not in df.columns]
    if missing:
        raise ValueError(f"{name} frame is missing required columns: {missing}")


def _empty_frame(name: str) -> pl.DataFrame:
    return pl.DataFrame({c: [] for c in REQUIRED_COLUMNS[name]})


def _row_to_record(row: dict, record_cls):
    """Build a dataclass record from a row, ignoring unknown columns."""
    names = {f.name for f in fields(record_cls)}
    kwargs = {k: v for k, v in row.items() if k in names}
    for metric in ALL_METRICS:
        if metric in kwargs and kwargs[metric] is not None:
            kwargs[metric] = float(kwargs[metric])
    return record_cls(**kwargs)


class FrameFeatureStore:
    """In-memory feature store backed by polars DataFrames.

    Each frame is keyed by (team_id, season). Missing frames behave as empty
    tiers, so a store built from game-level data only still resolves teams
    through the fallback hierarchy.
    """

    def __init__(
        self,
        game_stats: Optional[pl.DataFrame] = None,
        season_stats: Optional[pl.DataFrame] = None,
        baseline_ratings: Optional[pl.DataFrame] = None,
        talent: Optional[pl.DataFrame] = None,
        commits: Optional[pl.DataFrame] = None,
        games: Optional[pl.DataFrame] = None,
    ):
        frames = {
            "game_stats": game_stats,
            "season_stats": season_stats,
            "baseline_ratings": baseline_ratings,
            "talent": talent,
            "commits": commits,
            "games": games,
        }
        for name, df in frames.items():
            if df is None:
                df = _empty_frame(name)
            else:
                _validate_columns(name, df)
            setattr(self, f"_{name}", df)

    @classmethod
    def from_parquet_dir(cls, path: Path) -> "FrameFeatureStore":
        """Load a store from <path>/<frame>.parquet files (absent files = empty tier)."""
        path = Path(path)
        frames = {}
        for name in REQUIRED_COLUMNS:
            file_path = path / f"{name}.parquet"
            if file_path.exists():
                frames[name] = pl.read_parquet(file_path)
                logger.debug(f"Loaded {name}: {frames[name].height} rows from {file_path}")
            else:
                logger.debug(f"No {name}.parquet in {path}; tier treated as empty")
        return cls(**frames)

    @property
    def games(self) -> pl.DataFrame:
        return self._games

    def team_ids(self, season: int) -> list[str]:
        """All team ids appearing in any tier for a season (sorted)."""
        ids: set[str] = set()
        for df in (self._game_stats, self._season_stats, self._baseline_ratings):
            if df.height:
                ids.update(df.filter(pl.col("season") == season)["team_id"].to_list())
        return sorted(ids)

    def _team_rows(self, df: pl.DataFrame, team_id: str, season: int) -> pl.DataFrame:
        if df.height == 0:
            return df
        return df.filter((pl.col("team_id") == team_id) & (pl.col("season") == season))

    def get_game_stats(self, team_id: str, season: int, limit: int) -> list[GameStatRecord]:
        rows = self._team_rows(self._game_stats, team_id, season)
        if rows.height == 0:
            return []

        present = [m for m in EFFICIENCY_METRICS if m in rows.columns]
        if not present:
            return []
        rows = rows.filter(pl.any_horizontal([pl.col(m).is_not_null() for m in present]))

        sort_cols = ["week"] + (["updated_at"] if "updated_at" in rows.columns else [])
        rows = rows.sort(sort_cols, descending=True, nulls_last=True).head(limit)
        return [_row_to_record(r, GameStatRecord) for r in rows.iter_rows(named=True)]

    def get_season_stats(self, team_id: str, season: int) -> Optional[SeasonStatRecord]:
        rows = self._team_rows(self._season_stats, team_id, season)
        if rows.height == 0:
            return None
        return _row_to_record(rows.row(0, named=True), SeasonStatRecord)

    def get_baseline_rating(
        self, team_id: str, season: int, model_version: str
    ) -> Optional[BaselineRatingRecord]:
        rows = self._team_rows(self._baseline_ratings, team_id, season)
        if rows.height == 0:
            return None
        rows = rows.filter(pl.col("model_version") == model_version)
        if rows.height == 0:
            return None
        return _row_to_record(rows.row(0, named=True), BaselineRatingRecord)

    def get_talent(self, team_id: str, season: int) -> Optional[TalentRecord]:
        rows = self._team_rows(self._talent, team_id, season)
        if rows.height == 0:
            return None
        return _row_to_record(rows.row(0, named=True), TalentRecord)

    def get_commits(self, team_id: str, season: int) -> Optional[CommitsRecord]:
        rows = self._team_rows(self._commits, team_id, season)
        if rows.height == 0:
            return None
        row = {k: (0 if v is None else v) for k, v in rows.row(0, named=True).items()}
        return _row_to_record(row, CommitsRecord)

    def count_final_games(self, team_id: str, season: int) -> int:
        if self._games.height == 0:
            return 0
        return self._games.filter(
            (pl.col("season") == season)
            & (pl.col("status") == "final")
            & ((pl.col("home_team_id") == team_id) | (pl.col("away_team_id") == team_id))
        ).height
