"""End-to-end tests for rating generation and market checks."""

import logging

import numpy as np
import polars as pl
import pytest

from config.scenarios import get_scenario
from src.data.feature_store import FrameFeatureStore
from src.ratings.generate import fit_market_ratings, generate_ratings, run_market_audit

TEAMS = [f"U{i}" for i in range(8)]
STRENGTH = dict(zip(TEAMS, [12.0, 8.0, 5.0, 1.0, -1.0, -4.0, -9.0, -12.0]))
SEASON = 2025


def _schedule():
    """Double round robin over 14 weeks."""
    rot = list(TEAMS)
    rows = []
    for r in range(14):
        for i in range(4):
            a, b = rot[i], rot[7 - i]
            home, away = (a, b) if r < 7 else (b, a)
            rows.append((r + 1, home, away))
        rot = [rot[0], rot[-1]] + rot[1:-1]
    return rows


def _frames() -> tuple[pl.DataFrame, pl.DataFrame]:
    """(game_stats, games) for the season."""
    rng = np.random.RandomState(42)
    stats = []
    games = []
    for i, (week, home, away) in enumerate(_schedule()):
        half = int(round((STRENGTH[home] - STRENGTH[away] + 3.0) / 2))
        games.append({
            "game_id": f"g{i:03d}", "season": SEASON, "week": week,
            "home_team_id": home, "away_team_id": away,
            "home_score": 28 + half, "away_score": 28 - half,
            "neutral_site": week == 14 and i % 4 == 0, "status": "final",
        })
        for team in (home, away):
            s = STRENGTH[team]
            stats.append({
                "team_id": team, "season": SEASON, "game_id": f"g{i:03d}", "week": week,
                "ypp_off": 5.5 + 0.1 * s + rng.normal(0, 0.2),
                "success_off": 0.42 + 0.005 * s,
                "epa_off": 0.01 * s,
                "pass_ypa_off": 7.0 + 0.12 * s,
                "rush_ypc_off": 4.3 + 0.06 * s,
                "ypp_def": 5.5 - 0.1 * s + rng.normal(0, 0.2),
                "success_def": 0.42 - 0.005 * s,
                "epa_def": -0.01 * s,
                "pass_ypa_def": 7.0 - 0.12 * s,
                "rush_ypc_def": 4.3 - 0.06 * s,
            })
    return pl.DataFrame(stats), pl.DataFrame(games)


def _store() -> FrameFeatureStore:
    stats, games = _frames()
    return FrameFeatureStore(game_stats=stats, games=games)


def _quotes(games: pl.DataFrame) -> pl.DataFrame:
    rows = []
    for g in games.iter_rows(named=True):
        hfa = 0.0 if g["neutral_site"] else 2.5
        hma = STRENGTH[g["home_team_id"]] - STRENGTH[g["away_team_id"]] + hfa
        for book, offset in (("P", 0.0), ("Q", 0.5), ("R", -0.5)):
            rows.append({"game_id": g["game_id"], "book": book, "value": -hma + offset})
    return pl.DataFrame(rows)


class TestGenerateRatings:
    def test_ratings_follow_strength(self):
        store = _store()
        ratings, meta = generate_ratings(SEASON, store)
        assert [r.team_id for r in ratings] == TEAMS
        assert meta["n_teams"] == 8
        assert meta["data_sources"]["game"] == 8
        assert meta["point_scaled"]
        assert meta["league_hfa"] is None

    def test_hfa_attached(self):
        store = _store()
        ratings, meta = generate_ratings(SEASON, store, games=store.games)
        assert 1.0 <= meta["league_hfa"] <= 4.0
        assert set(meta["hfa"]) == set(TEAMS)
        for r in ratings:
            assert 0.5 <= r.hfa_team <= 5.0
            assert r.hfa_n_home + r.hfa_n_away > 0

    def test_unscaled_scenario_skips_hfa(self, caplog):
        store = _store()
        ratings, meta = generate_ratings(
            SEASON, store, scenario=get_scenario("v1"), games=store.games
        )
        assert meta["hfa"] == {}
        assert all(r.hfa_team is None for r in ratings)
        assert "skipping" in caplog.text

    def test_empty_games_skips_hfa(self, caplog):
        """A store without games.parquet has an empty games frame."""
        stats, _ = _frames()
        store = FrameFeatureStore(game_stats=stats)
        with caplog.at_level(logging.WARNING):
            ratings, meta = generate_ratings(SEASON, store, games=store.games)
        assert store.games.height == 0
        assert meta["hfa"] == {}
        assert meta["league_hfa"] is None
        assert all(r.hfa_team is None for r in ratings)
        assert "No game results for 2025" in caplog.text


class TestMarketChecks:
    def test_audit_passes_for_aligned_ratings(self):
        store = _store()
        ratings, meta = generate_ratings(SEASON, store, games=store.games)
        report = run_market_audit(SEASON, ratings, meta["hfa"], store.games, _quotes(store.games))
        assert report.passed
        assert report.overall.n == store.games.height

    def test_audit_week_window(self):
        store = _store()
        ratings, meta = generate_ratings(SEASON, store, games=store.games)
        report = run_market_audit(
            SEASON, ratings, meta["hfa"], store.games, _quotes(store.games), weeks=(1, 4)
        )
        assert report.overall.n == 16

    def test_fit_market_ratings(self):
        store = _store()
        solution, cv_table = fit_market_ratings(
            SEASON, store.games, _quotes(store.games), weeks=(1, 14), lam=0.01
        )
        assert cv_table is None
        assert solution.hfa_constant == pytest.approx(2.5, abs=0.1)
        ordered = solution.to_frame()["team_id"].tolist()
        assert ordered == TEAMS

    def test_fit_market_ratings_trims_blowout_lines(self):
        store = _store()
        quotes = _quotes(store.games).with_columns(
            pl.when(pl.col("game_id") == "g000").then(-40.0).otherwise(pl.col("value")).alias("value")
        )
        solution, _ = fit_market_ratings(SEASON, store.games, quotes, lam=0.01)
        assert solution.fit_metrics.n_games == store.games.height - 1
