"""Team-specific home field advantage with empirical-Bayes shrinkage.

Each team's raw HFA is measured from rating residuals in its valid games and
then shrunk toward the season's league mean:

    w        = n / (n + k)            (capped at 0.4 when n < 4)
    hfa_used = w * hfa_raw + (1 - w) * league_mean, clamped to [0.5, 5.0]

Residuals are always taken in the home frame:

    r = (home_score - away_score) - (R_home - R_away + prior_hfa)

so a team's home and away games both measure "home boost beyond the prior".
hfa_raw is the sample-weighted mean of those residuals.
The expectation uses the fixed prior rather than the league mean to avoid a
circular dependency (the league mean is the median of the raw values).

Neutral-site games always get HFA = 0.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

import numpy as np
import pandas as pd
import polars as pl

from config.settings import get_settings

logger = logging.getLogger(__name__)

# Diagnostic flag threshold; distinct from the shrink-weight cap threshold
LOW_SAMPLE_FLAG_GAMES = 2

REQUIRED_GAME_COLUMNS = [
    "home_team_id",
    "away_team_id",
    "home_score",
    "away_score",
    "neutral_site",
    "status",
    "week",
]


@dataclass
class TeamHFA:
    """HFA diagnostic bundle for one team-season."""

    team_id: str
    season: int
    hfa_used: float
    hfa_raw: Optional[float]
    n_home: int
    n_away: int
    shrink_weight: float
    league_mean: float
    outlier: bool = False
    low_sample: bool = False
    capped: bool = False

    @property
    def n_total(self) -> int:
        return self.n_home + self.n_away


class HomeFieldAdvantage:
    """
    Estimate per-team HFA from game results and team ratings.

    The estimator holds only its parameters and the most recent season's
    results (for get_hfa lookups); every compute_* method is a pure function
    of its arguments.
    """

    def __init__(
        self,
        k: Optional[float] = None,
        hfa_min: Optional[float] = None,
        hfa_max: Optional[float] = None,
        prior_hfa: Optional[float] = None,
        low_sample_games: Optional[int] = None,
        low_sample_max_weight: Optional[float] = None,
        outlier_threshold: Optional[float] = None,
        league_filter: Optional[float] = None,
        league_bounds: Optional[tuple] = None,
        max_regular_season_week: Optional[int] = None,
    ):
        """Initialize HFA estimator.

        Args:
            k: Prior strength in games (w = n / (n + k))
            hfa_min: Lower clamp on hfa_used
            hfa_max: Upper clamp on hfa_used
            prior_hfa: HFA assumed in the residual expectation, and the
                fallback league mean when no team has data
            low_sample_games: Below this many games, w is capped
            low_sample_max_weight: Cap on w for low-sample teams
            outlier_threshold: |hfa_raw| above this is flagged
            league_filter: |hfa_raw| above this is excluded from the league median
            league_bounds: Clamp on the league mean
            max_regular_season_week: Last regular-season week when games
                carry no season_type column
        """
        settings = get_settings()
        self.k = k if k is not None else settings.hfa_shrink_k
        self.hfa_min = hfa_min if hfa_min is not None else settings.hfa_min
        self.hfa_max = hfa_max if hfa_max is not None else settings.hfa_max
        self.prior_hfa = prior_hfa if prior_hfa is not None else settings.base_hfa
        self.low_sample_games = (
            low_sample_games if low_sample_games is not None else settings.hfa_low_sample_games
        )
        self.low_sample_max_weight = (
            low_sample_max_weight
            if low_sample_max_weight is not None
            else settings.hfa_low_sample_max_weight
        )
        self.outlier_threshold = (
            outlier_threshold if outlier_threshold is not None else settings.hfa_outlier_threshold
        )
        self.league_filter = league_filter if league_filter is not None else settings.hfa_league_filter
        self.league_bounds = league_bounds if league_bounds is not None else settings.hfa_league_bounds
        self.max_regular_season_week = (
            max_regular_season_week
            if max_regular_season_week is not None
            else settings.max_regular_season_week
        )

        if self.hfa_min > self.hfa_max:
            raise ValueError(f"hfa_min ({self.hfa_min}) exceeds hfa_max ({self.hfa_max})")

        self.team_hfa: dict[str, TeamHFA] = {}
        self.league_mean: float = self.prior_hfa

    def eligible_games(
        self,
        games: pl.DataFrame,
        fbs_teams: Optional[Iterable[str]] = None,
    ) -> pl.DataFrame:
        """Completed, scored, non-neutral regular-season games.

        Args:
            games: Game results frame
            fbs_teams: If given, both teams must be in this set (drops games
                against sub-division opponents)

        Returns:
            Filtered frame
        """
        missing = [c for c in REQUIRED_GAME_COLUMNS if c not in games.columns]
        if missing:
            raise ValueError(f"Games frame is missing required columns: {missing}")

        cond = (
            (pl.col("status") == "final")
            & pl.col("home_score").is_not_null()
            & pl.col("away_score").is_not_null()
            & ~pl.col("neutral_site").fill_null(False)
        )
        if "season_type" in games.columns:
            cond = cond & (pl.col("season_type") == "regular")
        else:
            cond = cond & (pl.col("week") <= self.max_regular_season_week)
        if fbs_teams is not None:
            fbs = list(fbs_teams)
            cond = cond & pl.col("home_team_id").is_in(fbs) & pl.col("away_team_id").is_in(fbs)

        eligible = games.filter(cond)
        logger.debug(f"HFA eligible games: {eligible.height} of {games.height}")
        return eligible

    def _with_residuals(self, games: pl.DataFrame, ratings: Mapping[str, float]) -> pl.DataFrame:
        """Attach the home-frame residual; unrated teams count as league average."""
        home_rating = [float(ratings.get(t, 0.0)) for t in games["home_team_id"].to_list()]
        away_rating = [float(ratings.get(t, 0.0)) for t in games["away_team_id"].to_list()]
        return games.with_columns(
            pl.Series("home_rating", home_rating, dtype=pl.Float64),
            pl.Series("away_rating", away_rating, dtype=pl.Float64),
        ).with_columns(
            (
                (pl.col("home_score") - pl.col("away_score")).cast(pl.Float64)
                - (pl.col("home_rating") - pl.col("away_rating") + self.prior_hfa)
            ).alias("residual")
        )

    def _raw_table(self, games: pl.DataFrame, ratings: Mapping[str, float]) -> pl.DataFrame:
        """Per-team raw HFA table: team_id, n_home, n_away, hfa_raw."""
        if games.height == 0:
            return pl.DataFrame(
                schema={
                    "team_id": pl.Utf8,
                    "n_home": pl.Int64,
                    "n_away": pl.Int64,
                    "hfa_raw": pl.Float64,
                },
            )

        scored = self._with_residuals(games, ratings)
        home = scored.group_by("home_team_id").agg(
            pl.len().cast(pl.Int64).alias("n_home"),
            pl.col("residual").sum().alias("home_sum"),
        ).rename({"home_team_id": "team_id"})
        away = scored.group_by("away_team_id").agg(
            pl.len().cast(pl.Int64).alias("n_away"),
            pl.col("residual").sum().alias("away_sum"),
        ).rename({"away_team_id": "team_id"})

        table = home.join(away, on="team_id", how="full", coalesce=True).with_columns(
            pl.col("n_home").fill_null(0),
            pl.col("n_away").fill_null(0),
            pl.col("home_sum").fill_null(0.0),
            pl.col("away_sum").fill_null(0.0),
        )
        # n-weighted mean of the home and away means == pooled mean
        return table.with_columns(
            ((pl.col("home_sum") + pl.col("away_sum")) / (pl.col("n_home") + pl.col("n_away"))).alias("hfa_raw")
        ).select(["team_id", "n_home", "n_away", "hfa_raw"]).sort("team_id")

    def compute_raw_hfa(
        self,
        team_id: str,
        games: pl.DataFrame,
        ratings: Mapping[str, float],
    ) -> Optional[tuple[float, int, int]]:
        """Raw HFA for one team from already-eligible games.

        Returns:
            (hfa_raw, n_home, n_away), or None when the team has no games
        """
        team_games = games.filter(
            (pl.col("home_team_id") == team_id) | (pl.col("away_team_id") == team_id)
        )
        if team_games.height == 0:
            return None

        scored = self._with_residuals(team_games, ratings)
        home_res = scored.filter(pl.col("home_team_id") == team_id)["residual"].to_numpy()
        away_res = scored.filter(pl.col("away_team_id") == team_id)["residual"].to_numpy()
        n_home, n_away = len(home_res), len(away_res)

        mean_home = home_res.mean() if n_home else 0.0
        mean_away = away_res.mean() if n_away else 0.0
        hfa_raw = (n_home * mean_home + n_away * mean_away) / (n_home + n_away)
        return float(hfa_raw), n_home, n_away

    def league_mean_hfa(self, raw_values: Iterable[Optional[float]]) -> float:
        """Median of plausible raw values, clamped to the league bounds."""
        values = [
            v for v in raw_values
            if v is not None and np.isfinite(v) and abs(v) <= self.league_filter
        ]
        if not values:
            logger.warning(f"No raw HFA values for league mean; using prior {self.prior_hfa:.2f}")
            return self.prior_hfa
        lo, hi = self.league_bounds
        return float(min(hi, max(lo, np.median(values))))

    def shrink(
        self,
        hfa_raw: Optional[float],
        n_total: int,
        league_mean: float,
    ) -> tuple[float, float, bool]:
        """Shrink a raw value toward the league mean.

        Returns:
            (hfa_used, shrink_weight, capped)
        """
        if n_total <= 0 or hfa_raw is None:
            used = min(self.hfa_max, max(self.hfa_min, league_mean))
            return used, 0.0, False

        w = n_total / (n_total + self.k)
        capped = False
        if n_total < self.low_sample_games and w > self.low_sample_max_weight:
            w = self.low_sample_max_weight
            capped = True

        shrunk = w * hfa_raw + (1 - w) * league_mean
        used = min(self.hfa_max, max(self.hfa_min, shrunk))
        return used, w, capped

    def _build_team_hfa(
        self,
        team_id: str,
        season: int,
        raw: Optional[tuple[float, int, int]],
        league_mean: float,
    ) -> TeamHFA:
        hfa_raw, n_home, n_away = raw if raw is not None else (None, 0, 0)
        n_total = n_home + n_away
        used, w, capped = self.shrink(hfa_raw, n_total, league_mean)
        result = TeamHFA(
            team_id=team_id,
            season=season,
            hfa_used=used,
            hfa_raw=hfa_raw,
            n_home=n_home,
            n_away=n_away,
            shrink_weight=w,
            league_mean=league_mean,
            outlier=hfa_raw is not None and abs(hfa_raw) > self.outlier_threshold,
            low_sample=n_total < LOW_SAMPLE_FLAG_GAMES,
            capped=capped,
        )
        if result.outlier:
            logger.warning(
                f"HFA outlier for {team_id} ({season}): raw={hfa_raw:.2f} over {n_total} games"
            )
        return result

    def compute_team_hfa(
        self,
        team_id: str,
        season: int,
        games: pl.DataFrame,
        ratings: Mapping[str, float],
        league_mean: Optional[float] = None,
        fbs_teams: Optional[Iterable[str]] = None,
    ) -> TeamHFA:
        """HFA bundle for one team.

        Args:
            team_id: Team identifier
            season: Season year (games are filtered to it when a season column exists)
            games: Game results frame (unfiltered)
            ratings: team_id -> power rating on a points scale
            league_mean: Precomputed league mean. If None, it is computed from
                every team's raw HFA in the same games.
            fbs_teams: Optional division set for eligibility

        Returns:
            TeamHFA
        """
        eligible = self.eligible_games(self._season_games(games, season), fbs_teams)
        if league_mean is None:
            league_mean = self.league_mean_hfa(self._raw_table(eligible, ratings)["hfa_raw"].to_list())
        raw = self.compute_raw_hfa(team_id, eligible, ratings)
        return self._build_team_hfa(team_id, season, raw, league_mean)

    def compute_season_hfa(
        self,
        season: int,
        games: pl.DataFrame,
        ratings: Mapping[str, float],
        fbs_teams: Optional[Iterable[str]] = None,
    ) -> dict[str, TeamHFA]:
        """HFA for every rated team and every team with eligible games.

        Two passes: raw values for all teams, then the league median, then
        shrinkage. Teams with no valid games get the league mean with w = 0.
        """
        fbs = set(fbs_teams) if fbs_teams is not None else None
        eligible = self.eligible_games(self._season_games(games, season), fbs)
        table = self._raw_table(eligible, ratings)
        league_mean = self.league_mean_hfa(table["hfa_raw"].to_list())

        raws = {
            row["team_id"]: (row["hfa_raw"], row["n_home"], row["n_away"])
            for row in table.iter_rows(named=True)
        }
        # DETERMINISM: sorted iteration
        teams = sorted(set(ratings) | set(raws))
        if fbs is not None:
            teams = [t for t in teams if t in fbs]

        results = {
            team: self._build_team_hfa(team, season, raws.get(team), league_mean)
            for team in teams
        }

        self.team_hfa = results
        self.league_mean = league_mean

        n_capped = sum(1 for r in results.values() if r.capped)
        n_empty = sum(1 for r in results.values() if r.n_total == 0)
        logger.info(
            f"HFA {season}: league mean {league_mean:.2f} from {len(raws)} teams, "
            f"{eligible.height} games; {n_capped} low-sample capped, {n_empty} without games"
        )
        return results

    @staticmethod
    def _season_games(games: pl.DataFrame, season: int) -> pl.DataFrame:
        if "season" in games.columns:
            return games.filter(pl.col("season") == season)
        return games

    def get_hfa(self, team_id: str, neutral_site: bool = False) -> float:
        """HFA in points for a home team. Always 0.0 on a neutral site."""
        if neutral_site:
            return 0.0
        result = self.team_hfa.get(team_id)
        if result is not None:
            return result.hfa_used
        return min(self.hfa_max, max(self.hfa_min, self.league_mean))

    def get_summary_df(self) -> pd.DataFrame:
        """Summary of team HFA values sorted by magnitude."""
        if not self.team_hfa:
            return pd.DataFrame()
        df = pd.DataFrame([vars(r) for r in self.team_hfa.values()])
        return df.sort_values(["hfa_used", "team_id"], ascending=[False, True]).reset_index(drop=True)


def attach_to_ratings(ratings, hfa: Mapping[str, TeamHFA]):
    """Fill the HFA fields of TeamRating objects in place; returns the list."""
    for r in ratings:
        team = hfa.get(r.team_id)
        if team is None:
            continue
        r.hfa_team = team.hfa_used
        r.hfa_raw = team.hfa_raw
        r.hfa_n_home = team.n_home
        r.hfa_n_away = team.n_away
        r.hfa_shrink_weight = team.shrink_weight
    return ratings
