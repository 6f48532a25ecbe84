"""Tests for team-specific home field advantage."""

import logging

import numpy as np
import polars as pl
import pytest

from src.adjustments.home_field import HomeFieldAdvantage, attach_to_ratings
from src.models.power_ratings import TeamRating


def _games(rows, season=2025) -> pl.DataFrame:
    """rows: (home, away, home_score, away_score[, neutral[, week[, status]]])"""
    records = []
    for i, row in enumerate(rows):
        home, away, hs, aws = row[:4]
        neutral = row[4] if len(row) > 4 else False
        week = row[5] if len(row) > 5 else 1 + i % 12
        status = row[6] if len(row) > 6 else "final"
        records.append({
            "game_id": f"g{i}",
            "season": season,
            "week": week,
            "home_team_id": home,
            "away_team_id": away,
            "home_score": hs,
            "away_score": aws,
            "neutral_site": neutral,
            "status": status,
        })
    return pl.DataFrame(records)


class TestShrink:
    """Empirical-Bayes shrinkage toward the league mean."""

    def test_three_games_uncapped(self):
        hfa = HomeFieldAdvantage(k=8.0)
        used, w, capped = hfa.shrink(6.0, 3, 2.0)
        assert w == pytest.approx(3 / 11)
        assert used == pytest.approx(2.0 + 3 / 11 * 4.0)
        assert not capped

    def test_low_sample_cap(self):
        """Small k would give w = 0.75 for three games; the cap holds it at 0.4."""
        hfa = HomeFieldAdvantage(k=1.0)
        used, w, capped = hfa.shrink(6.0, 3, 2.0)
        assert w == 0.4
        assert capped
        assert used == pytest.approx(3.6)

    def test_clamped_to_bounds(self):
        hfa = HomeFieldAdvantage(k=1.0)
        used, _, _ = hfa.shrink(9.0, 12, 3.0)
        assert used == 5.0
        used, _, _ = hfa.shrink(-6.0, 12, 1.0)
        assert used == 0.5

    def test_zero_games_gets_league_mean(self):
        hfa = HomeFieldAdvantage()
        assert hfa.shrink(None, 0, 2.5) == (2.5, 0.0, False)

    def test_invalid_bounds(self):
        with pytest.raises(ValueError, match="exceeds hfa_max"):
            HomeFieldAdvantage(hfa_min=4.0, hfa_max=3.0)


class TestLeagueMean:
    def test_median_of_plausible_values(self):
        hfa = HomeFieldAdvantage()
        assert hfa.league_mean_hfa([2.5, 3.0, 25.0, -30.0, None, 3.5]) == pytest.approx(3.0)

    def test_clamped(self):
        hfa = HomeFieldAdvantage()
        assert hfa.league_mean_hfa([5.0, 6.0, 7.0]) == 4.0
        assert hfa.league_mean_hfa([0.2, 0.5]) == 1.0

    def test_empty_uses_prior(self, caplog):
        hfa = HomeFieldAdvantage(prior_hfa=2.0)
        with caplog.at_level(logging.WARNING):
            assert hfa.league_mean_hfa([]) == 2.0
        assert "using prior" in caplog.text


class TestEligibility:
    """Only completed, non-neutral, regular-season games count."""

    def test_filters(self):
        games = _games([
            ("A", "B", 24, 17),
            ("A", "C", 21, 20, True),            # neutral
            ("B", "A", 10, 14, False, 3, "scheduled"),
            ("C", "A", None, None),              # unscored
            ("A", "B", 30, 3, False, 16),        # bowl week
        ])
        eligible = HomeFieldAdvantage().eligible_games(games)
        assert eligible["game_id"].to_list() == ["g0"]

    def test_season_type_column_preferred(self):
        games = _games([("A", "B", 24, 17, False, 15), ("A", "C", 24, 17, False, 2)])
        games = games.with_columns(pl.Series("season_type", ["regular", "postseason"]))
        eligible = HomeFieldAdvantage().eligible_games(games)
        assert eligible["game_id"].to_list() == ["g0"]

    def test_division_filter(self):
        games = _games([("A", "B", 24, 17), ("A", "FCS1", 56, 0)])
        eligible = HomeFieldAdvantage().eligible_games(games, fbs_teams=["A", "B"])
        assert eligible["game_id"].to_list() == ["g0"]

    def test_missing_columns(self):
        with pytest.raises(ValueError, match="missing required columns"):
            HomeFieldAdvantage().eligible_games(pl.DataFrame({"home_team_id": ["A"]}))


class TestRawHFA:
    def test_home_frame_residuals(self):
        """Away games contribute the same home-frame residual."""
        ratings = {"A": 10.0, "B": 0.0}
        games = _games([
            ("A", "B", 24, 7),   # margin 17, expected 12 -> +5
            ("B", "A", 14, 21),  # margin -7, expected -8 -> +1
        ])
        hfa = HomeFieldAdvantage(prior_hfa=2.0)
        raw, n_home, n_away = hfa.compute_raw_hfa("A", games, ratings)
        assert raw == pytest.approx(3.0)
        assert (n_home, n_away) == (1, 1)

    def test_raw_is_mean_residual(self):
        """The prior sits in the expectation only, not in hfa_raw."""
        ratings = {"A": 0.0, "B": 0.0, "C": 0.0}
        games = _games([
            ("A", "B", 2, 0),    # residual 0
            ("A", "C", 10, 0),   # residual +8
        ])
        hfa = HomeFieldAdvantage(prior_hfa=2.0)
        raw, _, _ = hfa.compute_raw_hfa("A", games, ratings)
        assert raw == pytest.approx(4.0)
        table = hfa._raw_table(games, ratings)
        assert table.filter(pl.col("team_id") == "A")["hfa_raw"][0] == pytest.approx(4.0)

    def test_no_games(self):
        assert HomeFieldAdvantage().compute_raw_hfa("Z", _games([("A", "B", 1, 0)]), {}) is None


class TestSeasonHFA:
    """Full-season estimation."""

    def _season(self):
        rng = np.random.RandomState(42)
        teams = [f"T{i}" for i in range(12)]
        ratings = {t: float(r) for t, r in zip(teams, rng.normal(0, 8, len(teams)))}
        rows = []
        for week in range(1, 11):
            order = rng.permutation(teams)
            for home, away in zip(order[::2], order[1::2]):
                home, away = str(home), str(away)
                half = int(round(float(ratings[home] - ratings[away] + 3.0 + rng.normal(0, 10)) / 2))
                rows.append((home, away, 28 + half, 28 - half, False, week))
        # A rated team that never plays
        ratings["IDLE"] = 1.0
        return _games(rows), ratings

    def test_bounds_and_neutral(self):
        games, ratings = self._season()
        hfa = HomeFieldAdvantage()
        results = hfa.compute_season_hfa(2025, games, ratings)
        assert set(results) == set(ratings)
        for team in results.values():
            assert hfa.hfa_min <= team.hfa_used <= hfa.hfa_max
            assert 0.0 <= team.shrink_weight < 1.0
        assert hfa.get_hfa("T0", neutral_site=True) == 0.0
        assert hfa.league_mean == pytest.approx(
            hfa.league_mean_hfa([r.hfa_raw for r in results.values()])
        )

    def test_team_without_games(self):
        games, ratings = self._season()
        hfa = HomeFieldAdvantage()
        idle = hfa.compute_season_hfa(2025, games, ratings)["IDLE"]
        assert idle.n_total == 0
        assert idle.shrink_weight == 0.0
        assert idle.hfa_used == pytest.approx(min(5.0, max(0.5, hfa.league_mean)))
        assert idle.low_sample

    def test_single_team_matches_season(self):
        games, ratings = self._season()
        hfa = HomeFieldAdvantage()
        season = hfa.compute_season_hfa(2025, games, ratings)
        single = hfa.compute_team_hfa("T3", 2025, games, ratings)
        assert single.hfa_used == pytest.approx(season["T3"].hfa_used)
        assert single.hfa_raw == pytest.approx(season["T3"].hfa_raw)

    def test_other_season_ignored(self):
        games, ratings = self._season()
        hfa = HomeFieldAdvantage()
        results = hfa.compute_season_hfa(2024, games, ratings)
        assert all(r.n_total == 0 for r in results.values())
        assert hfa.league_mean == hfa.prior_hfa

    def test_outlier_flagged(self, caplog):
        games = _games([("A", "B", 45, 3)])
        with caplog.at_level(logging.WARNING):
            results = HomeFieldAdvantage().compute_season_hfa(2025, games, {"A": 0.0, "B": 0.0})
        assert results["A"].outlier
        assert results["A"].low_sample
        assert "HFA outlier for A" in caplog.text

    def test_moderate_residual_not_outlier(self, caplog):
        """A mean residual of 6.5 stays under the outlier threshold of 8."""
        games = _games([("A", "B", 12, 3)])   # margin 9, expected 2.5
        hfa = HomeFieldAdvantage(prior_hfa=2.0, k=8.0)
        with caplog.at_level(logging.WARNING):
            results = hfa.compute_season_hfa(2025, games, {"A": 0.5, "B": 0.0})
        team = results["A"]
        assert team.hfa_raw == pytest.approx(6.5)
        assert not team.outlier
        assert "HFA outlier" not in caplog.text
        # both raw values are 6.5, so the league median clamps to 4.0
        assert hfa.league_mean == 4.0
        assert team.hfa_used == pytest.approx(6.5 / 9 + 4.0 * 8 / 9)

    def test_attach_and_summary(self):
        games, ratings = self._season()
        hfa = HomeFieldAdvantage()
        results = hfa.compute_season_hfa(2025, games, ratings)
        team_ratings = [
            TeamRating("T1", 2025, "v1_points", 1.0, 1.0, 2.0, 1.0, "game"),
            TeamRating("NEW", 2025, "v1_points", 0.0, 0.0, 0.0, 0.0, "missing"),
        ]
        attach_to_ratings(team_ratings, results)
        assert team_ratings[0].hfa_team == results["T1"].hfa_used
        assert team_ratings[1].hfa_team is None
        summary = hfa.get_summary_df()
        assert len(summary) == len(results)
        assert summary["hfa_used"].is_monotonic_decreasing
