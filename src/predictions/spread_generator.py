"""Spread generator: point margins from team ratings and home field advantage."""

import logging
import math
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Union

import pandas as pd
import polars as pl

from config.scenarios import WeightScenario
from src.adjustments.home_field import HomeFieldAdvantage, TeamHFA
from src.models.power_ratings import TeamRating

logger = logging.getLogger(__name__)


@dataclass
class PredictedSpread:
    """A predicted home-minus-away margin with its components.

    spread is stored at full precision; spread_display rounds to the half point.
    """

    home_team: str
    away_team: str
    spread: float  # Positive = home team favored (hma frame)
    base_margin: float
    home_field: float
    neutral_site: bool
    home_win_probability: float
    confidence: str = "Medium"  # Low, Medium, High
    game_id: Optional[str] = None

    @property
    def spread_display(self) -> float:
        """Spread rounded to 0.5 (standard betting increment)."""
        return round(self.spread * 2) / 2

    @property
    def favorite(self) -> Optional[str]:
        if self.spread > 0:
            return self.home_team
        if self.spread < 0:
            return self.away_team
        return None

    @property
    def spread_vs_favorite(self) -> float:
        """Spread from the favorite's perspective (always <= 0)."""
        return -abs(self.spread)

    def to_dict(self) -> dict:
        return {
            "game_id": self.game_id,
            "home_team": self.home_team,
            "away_team": self.away_team,
            "spread": self.spread_display,
            "spread_raw": self.spread,
            "favorite": self.favorite,
            "spread_vs_favorite": round(self.spread_vs_favorite * 2) / 2,
            "home_win_prob": round(self.home_win_probability, 3),
            "confidence": self.confidence,
            "base_margin": self.base_margin,
            "hfa": self.home_field,
            "neutral_site": self.neutral_site,
        }


HFASource = Union[HomeFieldAdvantage, Mapping[str, Union[TeamHFA, float]], None]


class SpreadGenerator:
    """
    Predict home-minus-away margins as R_home - R_away + HFA.

    HFA is 0.0 on neutral sites no matter what the HFA source says.
    """

    # Logistic steepness for win probability (0.15 ≈ 3% per point near pick'em)
    WIN_PROB_K = 0.15

    def __init__(
        self,
        ratings: Union[Sequence[TeamRating], Mapping[str, float]],
        hfa: HFASource = None,
        scenario: Optional[WeightScenario] = None,
        default_hfa: float = 0.0,
    ):
        """Initialize generator.

        Args:
            ratings: TeamRating list or team_id -> rating (points scale)
            hfa: HomeFieldAdvantage estimator, team_id -> TeamHFA/points, or None
            scenario: Scenario that produced the ratings. Unscaled scenarios
                are rejected since their differences are not points.
            default_hfa: HFA for home teams the source does not know
        """
        if scenario is not None and not scenario.is_point_scaled:
            raise ValueError(
                f"Scenario {scenario.name!r} produces unscaled z-composites; "
                "set target_std before differencing ratings into point spreads"
            )

        self.confidence: dict[str, float] = {}
        if isinstance(ratings, Mapping):
            self.ratings = {team: float(r) for team, r in ratings.items()}
        else:
            self.ratings = {r.team_id: r.power_rating for r in ratings}
            self.confidence = {r.team_id: r.confidence for r in ratings}
        self.hfa = hfa
        self.default_hfa = default_hfa

    def _home_field(self, home_team: str, neutral_site: bool) -> float:
        if neutral_site:
            return 0.0
        if isinstance(self.hfa, HomeFieldAdvantage):
            return self.hfa.get_hfa(home_team, neutral_site=False)
        if self.hfa is None:
            return self.default_hfa
        entry = self.hfa.get(home_team)
        if entry is None:
            return self.default_hfa
        return float(getattr(entry, "hfa_used", entry))

    def _spread_to_probability(self, spread: float) -> float:
        return 1 / (1 + math.exp(-self.WIN_PROB_K * spread))

    def _determine_confidence(self, home_team: str, away_team: str) -> str:
        if not self.confidence:
            return "Medium"
        c = min(self.confidence.get(home_team, 0.0), self.confidence.get(away_team, 0.0))
        if c >= 0.8:
            return "High"
        if c >= 0.5:
            return "Medium"
        return "Low"

    def predict(
        self,
        home_team: str,
        away_team: str,
        neutral_site: bool = False,
        game_id: Optional[str] = None,
    ) -> PredictedSpread:
        """Predict one game.

        Raises:
            KeyError: if either team has no rating
        """
        missing = [t for t in (home_team, away_team) if t not in self.ratings]
        if missing:
            raise KeyError(f"No rating for {', '.join(missing)}")

        base_margin = self.ratings[home_team] - self.ratings[away_team]
        home_field = self._home_field(home_team, neutral_site)
        spread = base_margin + home_field
        return PredictedSpread(
            home_team=home_team,
            away_team=away_team,
            spread=spread,
            base_margin=base_margin,
            home_field=home_field,
            neutral_site=neutral_site,
            home_win_probability=self._spread_to_probability(spread),
            confidence=self._determine_confidence(home_team, away_team),
            game_id=game_id,
        )

    def predict_games(self, games: pl.DataFrame) -> list[PredictedSpread]:
        """Predict every game in a frame; games with an unrated team are skipped."""
        predictions = []
        skipped = 0
        has_neutral = "neutral_site" in games.columns
        has_id = "game_id" in games.columns
        for row in games.iter_rows(named=True):
            home = row["home_team_id"]
            away = row["away_team_id"]
            if home not in self.ratings or away not in self.ratings:
                skipped += 1
                continue
            predictions.append(
                self.predict(
                    home,
                    away,
                    neutral_site=bool(row["neutral_site"]) if has_neutral else False,
                    game_id=row["game_id"] if has_id else None,
                )
            )
        if skipped:
            logger.warning(f"Skipped {skipped} games with an unrated team")
        logger.debug(f"Predicted {len(predictions)} games")
        return predictions

    def predictions_to_dataframe(
        self,
        predictions: list[PredictedSpread],
        sort_by_spread: bool = True,
    ) -> pd.DataFrame:
        """Predictions as a DataFrame, biggest mismatches first by default."""
        df = pd.DataFrame([p.to_dict() for p in predictions])
        if sort_by_spread and not df.empty:
            df = df.reindex(df["spread_raw"].abs().sort_values(ascending=False).index).reset_index(
                drop=True
            )
        return df
