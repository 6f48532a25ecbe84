"""Tests for Market-Fitted Team Ratings."""

import numpy as np
import polars as pl
import pytest

from src.models.mftr import (
    UnderdeterminedSystemError,
    build_design_matrix,
    build_mftr,
    cross_validate_lambda,
    select_training_games,
    solve_linear_system,
    team_components,
)

TRUE_HFA = 3.0


def _round_robin(teams, rounds=None):
    """Circle-method schedule: list of (week, home, away)."""
    rot = list(teams)
    n = len(rot)
    schedule = []
    for r in range(rounds or n - 1):
        for i in range(n // 2):
            home, away = (rot[i], rot[n - 1 - i]) if r % 2 == 0 else (rot[n - 1 - i], rot[i])
            schedule.append((r + 1, home, away))
        rot = [rot[0], rot[-1]] + rot[1:-1]
    return schedule


def _market_games(teams=None, noise=0.0, seed=42, neutral_every=0, schedule=None):
    rng = np.random.RandomState(seed)
    teams = teams or [f"T{i:02d}" for i in range(12)]
    truth = {t: float(v) for t, v in zip(teams, rng.normal(0, 7, len(teams)))}
    schedule = schedule or _round_robin(teams)
    rows = []
    for i, (week, home, away) in enumerate(schedule):
        neutral = bool(neutral_every) and i % neutral_every == 0
        hma = truth[home] - truth[away] + (0.0 if neutral else TRUE_HFA) + rng.normal(0, noise)
        rows.append({
            "game_id": f"g{i:03d}",
            "season": 2025,
            "week": week,
            "home_team_id": home,
            "away_team_id": away,
            "neutral_site": neutral,
            "status": "final",
            "market_hma": float(hma),
        })
    return pl.DataFrame(rows), truth


class TestSolver:
    def test_known_system(self):
        A = np.array([[2.0, 1.0, -1.0], [-3.0, -1.0, 2.0], [-2.0, 1.0, 2.0]])
        b = np.array([8.0, -11.0, -3.0])
        np.testing.assert_allclose(solve_linear_system(A, b), [2.0, 3.0, -1.0])

    def test_needs_pivoting(self):
        A = np.array([[0.0, 1.0], [1.0, 0.0]])
        np.testing.assert_allclose(solve_linear_system(A, [3.0, 4.0]), [4.0, 3.0])

    def test_singular(self):
        with pytest.raises(UnderdeterminedSystemError, match="singular") as exc:
            solve_linear_system([[1.0, 2.0], [2.0, 4.0]], [1.0, 2.0])
        assert exc.value.reason == "singular"

    def test_shape_check(self):
        with pytest.raises(ValueError, match="square"):
            solve_linear_system(np.ones((2, 3)), [1.0, 2.0])


class TestDesignMatrix:
    def test_rows(self):
        games = pl.DataFrame({
            "game_id": ["g1", "g2"],
            "week": [1, 1],
            "home_team_id": ["A", "B"],
            "away_team_id": ["B", "C"],
            "neutral_site": [False, True],
            "market_hma": [7.0, -3.0],
        })
        A, b, w = build_design_matrix(games, {"A": 0, "B": 1, "C": 2})
        dense = A.toarray()
        np.testing.assert_array_equal(dense[0], [1.0, -1.0, 0.0, 1.0])
        # Neutral site: no HFA term
        np.testing.assert_array_equal(dense[1], [0.0, 1.0, -1.0, 0.0])
        np.testing.assert_array_equal(b, [7.0, -3.0])
        np.testing.assert_array_equal(w, [1.0, 1.0])

    def test_components(self):
        games = pl.DataFrame({
            "home_team_id": ["A", "C"],
            "away_team_id": ["B", "D"],
        })
        n, labels = team_components(games)
        assert n == 2
        assert labels["A"] == labels["B"] != labels["C"]


class TestBuildMFTR:
    """Fitting on synthetic market lines with known ratings."""

    def test_recovers_ratings_and_hfa(self):
        games, truth = _market_games(neutral_every=5)
        solution = build_mftr(games, 2025, lam=0.001)
        mean = np.mean(list(truth.values()))
        for team, value in truth.items():
            assert solution.ratings[team] == pytest.approx(value - mean, abs=0.05)
        assert solution.hfa_constant == pytest.approx(TRUE_HFA, abs=0.05)
        assert solution.fit_metrics.acceptable
        assert solution.fit_metrics.pearson > 0.999

    def test_ratings_centered(self):
        games, _ = _market_games(noise=2.0)
        solution = build_mftr(games, 2025)
        assert np.mean(list(solution.ratings.values())) == pytest.approx(0.0, abs=1e-9)

    def test_prediction_frame(self):
        games, _ = _market_games(noise=2.0)
        solution = build_mftr(games, 2025)
        assert solution.predict("T01", "T02", neutral_site=True) == pytest.approx(
            solution.ratings["T01"] - solution.ratings["T02"]
        )
        assert solution.predict("T01", "T02") - solution.predict("T01", "T02", True) == pytest.approx(
            solution.hfa_constant
        )
        assert solution.predict("NEW", "NEW") == pytest.approx(solution.hfa_constant)
        df = solution.to_frame()
        assert list(df["rank"]) == list(range(1, 13))
        assert df["rating"].is_monotonic_decreasing

    def test_shifted_prior_gives_same_predictions(self):
        """A constant shift of every prior rating cannot move any predicted margin."""
        games, truth = _market_games(noise=3.0)
        prior = {t: v * 0.5 for t, v in truth.items()}
        shifted = {t: v + 25.0 for t, v in prior.items()}
        a = build_mftr(games, 2025, lam=1.0, prior=prior)
        b = build_mftr(games, 2025, lam=1.0, prior=shifted)
        assert a.hfa_constant == pytest.approx(b.hfa_constant)
        for team in truth:
            assert a.ratings[team] == pytest.approx(b.ratings[team], abs=1e-8)

    def test_week_window(self):
        games, _ = _market_games()
        solution = build_mftr(games, 2025, weeks=(1, 10), min_games=10)
        assert solution.fit_metrics.n_games == 60
        assert solution.weeks == (1, 10)

    def test_blowout_lines_trimmed_by_default(self):
        """A 40-point line is dropped unless the caller widens the trim."""
        games, _ = _market_games()
        games = games.with_columns(
            pl.when(pl.col("game_id") == "g000").then(40.0).otherwise(pl.col("market_hma")).alias("market_hma")
        )
        assert build_mftr(games, 2025).fit_metrics.n_games == games.height - 1
        kept = build_mftr(games, 2025, max_abs_spread=float("inf"))
        assert kept.fit_metrics.n_games == games.height

    def test_insufficient_games(self):
        games, _ = _market_games()
        with pytest.raises(UnderdeterminedSystemError, match="insufficient_games") as exc:
            build_mftr(games.head(40), 2025)
        assert exc.value.details["n_games"] == 40

    def test_disconnected(self):
        east = [f"E{i}" for i in range(6)]
        west = [f"W{i}" for i in range(6)]
        schedule = _round_robin(east) * 2 + _round_robin(west) * 2
        games, _ = _market_games(teams=east + west, schedule=schedule)
        with pytest.raises(UnderdeterminedSystemError, match="disconnected") as exc:
            build_mftr(games, 2025)
        assert exc.value.details["n_components"] == 2

    def test_zero_lambda_is_singular(self):
        """Without the ridge term a uniform rating shift is unidentified."""
        games, _ = _market_games()
        with pytest.raises(UnderdeterminedSystemError, match="singular"):
            build_mftr(games, 2025, lam=0.0)

    def test_missing_target_rows_skipped(self):
        games, _ = _market_games()
        games = games.with_columns(
            pl.when(pl.col("week") == 1).then(None).otherwise(pl.col("market_hma")).alias("market_hma")
        )
        assert select_training_games(games, 2025).height == 60

    def test_missing_columns(self):
        with pytest.raises(ValueError, match="missing required columns"):
            select_training_games(pl.DataFrame({"game_id": ["g1"]}))


class TestCrossValidation:
    def test_lambda_table(self):
        games, _ = _market_games(noise=4.0)
        best, table = cross_validate_lambda(games, 2025, lambdas=(0.01, 0.5, 5.0), min_games=30)
        assert best in (0.01, 0.5, 5.0)
        assert list(table["lam"]) == [0.01, 0.5, 5.0]
        assert (table["n_folds"] == 11).all()
        assert table.loc[table["lam"] == best, "mean_pearson"].iloc[0] == table["mean_pearson"].max()

    def test_no_folds(self):
        games, _ = _market_games()
        with pytest.raises(UnderdeterminedSystemError, match="No λ fold"):
            cross_validate_lambda(games.head(20), 2025, lambdas=(0.1,))
