"""Team feature loading with a tiered fallback hierarchy.

For each (team, season) the loader picks exactly one data source:

1. game     - mean of the most recent game-level records (highest fidelity)
2. season   - the stored season aggregate
3. baseline - a coarse approximation derived from a prior model's rating
4. missing  - nothing usable; all metrics null, confidence 0

Tier selection is a pure function (resolve_tier) over what the store
returned; FeatureLoader only does the I/O and merges talent fields.
"""

import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence, Union

import numpy as np

from config.scenarios import ALL_METRICS
from config.settings import get_settings
from src.data.feature_store import (
    BaselineRatingRecord,
    CommitsRecord,
    FeatureStoreReader,
    GameStatRecord,
    SeasonStatRecord,
)

logger = logging.getLogger(__name__)

# Tag for the baseline-rating approximation (ypp = rating / 10, epa = rating / 20).
# Bump when the formula changes so downstream consumers can tell ratings apart.
BASELINE_APPROXIMATION_VERSION = "baseline-div-v1"


class DataGapError(Exception):
    """Raised in strict mode when a team resolves to the missing tier."""

    def __init__(self, team_id: str, season: int, reason: str = "no data in any tier"):
        self.team_id = team_id
        self.season = season
        self.reason = reason
        super().__init__(f"No usable features for {team_id} ({season}): {reason}")


class DataSource(str, Enum):
    GAME = "game"
    SEASON = "season"
    BASELINE = "baseline"
    MISSING = "missing"


@dataclass(frozen=True)
class GameTier:
    metrics: dict
    games_count: int
    confidence: float
    last_updated: Optional[datetime] = None
    source: DataSource = DataSource.GAME


@dataclass(frozen=True)
class SeasonTier:
    metrics: dict
    confidence: float
    last_updated: Optional[datetime] = None
    source: DataSource = DataSource.SEASON


@dataclass(frozen=True)
class BaselineTier:
    metrics: dict
    confidence: float
    approximation: str = BASELINE_APPROXIMATION_VERSION
    last_updated: Optional[datetime] = None
    source: DataSource = DataSource.BASELINE


@dataclass(frozen=True)
class MissingTier:
    confidence: float = 0.0
    source: DataSource = DataSource.MISSING

    @property
    def metrics(self) -> dict:
        return {m: None for m in ALL_METRICS}


Tier = Union[GameTier, SeasonTier, BaselineTier, MissingTier]


@dataclass
class TeamFeatures:
    """Feature vector for one team-season, tagged with its data source."""

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
    talent_composite: Optional[float] = None
    blue_chips_pct: Optional[float] = None
    commits_signal: Optional[float] = None
    weeks_played: int = 0
    data_source: DataSource = DataSource.MISSING
    confidence: float = 0.0
    games_count: int = 0
    last_updated: Optional[datetime] = None
    notes: list = field(default_factory=list)

    def metric(self, name: str) -> Optional[float]:
        return getattr(self, name)

    def to_dict(self) -> dict:
        d = {"team_id": self.team_id, "season": self.season}
        d.update({m: getattr(self, m) for m in ALL_METRICS})
        d.update(
            {
                "talent_composite": self.talent_composite,
                "blue_chips_pct": self.blue_chips_pct,
                "commits_signal": self.commits_signal,
                "weeks_played": self.weeks_played,
                "data_source": self.data_source.value,
                "confidence": self.confidence,
                "games_count": self.games_count,
            }
        )
        return d


def _average_game_metrics(records: Sequence[GameStatRecord]) -> dict:
    """Per-metric mean over records, skipping nulls per metric."""
    metrics = {}
    for m in ALL_METRICS:
        values = [getattr(r, m) for r in records if getattr(r, m) is not None]
        metrics[m] = float(np.mean(values)) if values else None
    return metrics


def _baseline_metrics(record: BaselineRatingRecord) -> dict:
    """Coarse metrics from a prior rating: ypp = r / 10, epa = r / 20 when r > 0."""
    metrics = {m: None for m in ALL_METRICS}
    off = record.offense_rating
    dfn = record.defense_rating
    if off is not None and off > 0:
        metrics["ypp_off"] = off / 10
        metrics["epa_off"] = off / 20
    if dfn is not None and dfn > 0:
        metrics["ypp_def"] = dfn / 10
        metrics["epa_def"] = dfn / 20
    return metrics


def resolve_tier(
    game_records: Sequence[GameStatRecord],
    season_record: Optional[SeasonStatRecord],
    baseline_record: Optional[BaselineRatingRecord],
    window: int = 10,
    full_confidence_games: int = 8,
    season_confidence: float = 0.7,
    baseline_confidence: float = 0.3,
) -> Tier:
    """Pick the highest-fidelity tier available for one team-season.

    Args:
        game_records: Game-level records, most recent first
        season_record: Season aggregate, or None
        baseline_record: Prior-model rating, or None
        window: Number of most recent qualifying games averaged
        full_confidence_games: Games at which game-tier confidence reaches 1.0

    Returns:
        Exactly one of GameTier, SeasonTier, BaselineTier, MissingTier
    """
    qualifying = [r for r in game_records if r.has_efficiency_data()][:window]
    if qualifying:
        n = len(qualifying)
        stamps = [r.updated_at for r in qualifying if r.updated_at is not None]
        return GameTier(
            metrics=_average_game_metrics(qualifying),
            games_count=n,
            confidence=min(1.0, n / full_confidence_games),
            last_updated=max(stamps) if stamps else None,
        )

    if season_record is not None:
        return SeasonTier(
            metrics={m: getattr(season_record, m) for m in ALL_METRICS},
            confidence=season_confidence,
            last_updated=season_record.created_at,
        )

    if baseline_record is not None:
        return BaselineTier(
            metrics=_baseline_metrics(baseline_record),
            confidence=baseline_confidence,
            last_updated=baseline_record.created_at,
        )

    return MissingTier()


def commits_signal(record: Optional[CommitsRecord]) -> Optional[float]:
    """Star-weighted recruiting signal: (5*five + 4*four + 3*three) / total."""
    if record is None or not record.commits_total:
        return None
    weighted = (
        5 * record.five_star_commits
        + 4 * record.four_star_commits
        + 3 * record.three_star_commits
    )
    return weighted / record.commits_total


class FeatureLoader:
    """Load TeamFeatures from a FeatureStoreReader.

    Read failures for a team are logged and that team degrades to the missing
    tier; they never abort a season load.
    """

    def __init__(
        self,
        reader: FeatureStoreReader,
        window: Optional[int] = None,
        baseline_model_version: Optional[str] = None,
        max_workers: Optional[int] = None,
    ):
        settings = get_settings()
        self.reader = reader
        self.window = window if window is not None else settings.game_window
        self.full_confidence_games = settings.game_confidence_games
        self.season_confidence = settings.season_confidence
        self.baseline_confidence = settings.baseline_confidence
        self.baseline_model_version = (
            baseline_model_version
            if baseline_model_version is not None
            else settings.baseline_model_version
        )
        self.max_workers = max_workers if max_workers is not None else settings.feature_workers

    def _read_tier(self, team_id: str, season: int) -> Tier:
        # Lower tiers are only read when the higher ones come back empty
        games = self.reader.get_game_stats(team_id, season, self.window)
        season_record = None
        baseline = None
        if not any(r.has_efficiency_data() for r in games):
            season_record = self.reader.get_season_stats(team_id, season)
            if season_record is None:
                baseline = self.reader.get_baseline_rating(
                    team_id, season, self.baseline_model_version
                )
        return resolve_tier(
            games,
            season_record,
            baseline,
            window=self.window,
            full_confidence_games=self.full_confidence_games,
            season_confidence=self.season_confidence,
            baseline_confidence=self.baseline_confidence,
        )

    def load_talent_features(self, team_id: str, season: int) -> dict:
        """Talent fields for a team. Failures yield nulls and weeks_played = 0."""
        try:
            talent = self.reader.get_talent(team_id, season)
            commits = self.reader.get_commits(team_id, season)
            weeks_played = self.reader.count_final_games(team_id, season)
        except Exception as e:
            logger.warning(f"Talent read failed for {team_id} ({season}): {e}")
            return {
                "talent_composite": None,
                "blue_chips_pct": None,
                "commits_signal": None,
                "weeks_played": 0,
            }

        return {
            "talent_composite": talent.talent_composite if talent else None,
            "blue_chips_pct": talent.blue_chips_pct if talent else None,
            "commits_signal": commits_signal(commits),
            "weeks_played": int(weeks_played or 0),
        }

    def load_team_features(
        self,
        team_id: str,
        season: int,
        require_data: bool = False,
    ) -> TeamFeatures:
        """Load one team's feature vector.

        Args:
            team_id: Team identifier
            season: Season year
            require_data: If True, raise DataGapError instead of returning
                a missing-tier vector

        Returns:
            TeamFeatures tagged with its data source and confidence
        """
        notes = []
        try:
            tier = self._read_tier(team_id, season)
        except Exception as e:
            logger.warning(f"Feature read failed for {team_id} ({season}), using missing tier: {e}")
            if require_data:
                raise DataGapError(team_id, season, f"reader failure: {e}") from e
            tier = MissingTier()
            notes.append(f"read_error: {e}")

        if require_data and isinstance(tier, MissingTier):
            raise DataGapError(team_id, season)

        features = TeamFeatures(
            team_id=team_id,
            season=season,
            data_source=tier.source,
            confidence=tier.confidence,
            games_count=tier.games_count if isinstance(tier, GameTier) else 0,
            last_updated=getattr(tier, "last_updated", None),
            notes=notes,
        )
        for m, value in tier.metrics.items():
            setattr(features, m, value)
        if isinstance(tier, BaselineTier):
            features.notes.append(f"approximation: {tier.approximation}")

        for k, v in self.load_talent_features(team_id, season).items():
            setattr(features, k, v)

        logger.debug(
            f"{team_id} ({season}): source={features.data_source.value}, "
            f"confidence={features.confidence:.2f}, games={features.games_count}"
        )
        return features

    def load_season(
        self,
        team_ids: Sequence[str],
        season: int,
        max_workers: Optional[int] = None,
        require_data: bool = False,
    ) -> list[TeamFeatures]:
        """Load all teams for a season concurrently.

        Output order matches team_ids regardless of completion order.
        """
        workers = max_workers if max_workers is not None else self.max_workers
        workers = max(1, min(workers, len(team_ids) or 1))
        results: dict[str, TeamFeatures] = {}

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self.load_team_features, team_id, season, require_data): team_id
                for team_id in team_ids
            }
            for future in as_completed(futures):
                team_id = futures[future]
                try:
                    results[team_id] = future.result()
                except Exception as e:
                    logger.error(f"Feature load failed for {team_id}: {e}")
                    raise

        features = [results[t] for t in team_ids]
        summary = get_data_source_summary(features)
        logger.info(
            f"Loaded features for {len(features)} teams ({season}): "
            + ", ".join(f"{k}={v}" for k, v in summary.items())
        )
        return features


def get_data_source_summary(features: Sequence[TeamFeatures]) -> dict[str, int]:
    """Count teams per data source (every tier key present, zero if unused)."""
    counts = Counter(f.data_source.value for f in features)
    return {source.value: counts.get(source.value, 0) for source in DataSource}
