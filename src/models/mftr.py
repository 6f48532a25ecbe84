"""Market-Fitted Team Ratings (MFTR).

Solves for one rating per team plus a single home-field constant such that

    market_hma ≈ R_home - R_away + hfa_constant     (hfa term 0 on neutral sites)

over every completed game in a (season, week-range) window that has a market
consensus line. The fit is an independent, market-grounded cross-check on the
feature-based ratings: systematic disagreement points at a wiring defect
rather than a market inefficiency.

Ridge normal equations:

    (AᵀWA + λP) x = AᵀWb + λP·prior

where P is the identity (plain variant) or the identity on team columns only
(prior-tethered variant). Ratings are centered to zero mean after the solve;
centering never changes a pairwise difference, so predictions are unaffected.
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

import numpy as np
import pandas as pd
import polars as pl
from scipy import sparse
from scipy.sparse.csgraph import connected_components

from config.settings import get_settings
from src.calibration.diagnostics import pearson, simple_ols, spearman

logger = logging.getLogger(__name__)

TARGET_COL = "market_hma"

REQUIRED_COLUMNS = ["game_id", "week", "home_team_id", "away_team_id", TARGET_COL]


class UnderdeterminedSystemError(Exception):
    """The MFTR system cannot be trusted: too few games, disconnected, or singular."""

    def __init__(self, reason: str, message: str, details: Optional[dict] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(f"[{reason}] {message}")


@dataclass
class MFTRFitMetrics:
    n_games: int
    n_teams: int
    rmse: float
    r2: float
    pearson: float
    spearman: float
    ols_slope: float
    ols_intercept: float
    acceptable: bool = True


@dataclass
class MFTRSolution:
    """Solved ratings for one training window."""

    season: int
    weeks: Optional[tuple]
    ratings: dict
    hfa_constant: float
    fit_metrics: MFTRFitMetrics
    lam: float
    raw_ratings: dict = field(default_factory=dict)

    def predict(self, home_team_id: str, away_team_id: str, neutral_site: bool = False) -> float:
        """Predicted home-minus-away margin. Teams outside the window rate 0 (league average)."""
        hfa = 0.0 if neutral_site else self.hfa_constant
        return self.ratings.get(home_team_id, 0.0) - self.ratings.get(away_team_id, 0.0) + hfa

    def to_frame(self) -> pd.DataFrame:
        df = pd.DataFrame(
            {"team_id": list(self.ratings.keys()), "rating": list(self.ratings.values())}
        )
        df = df.sort_values(["rating", "team_id"], ascending=[False, True]).reset_index(drop=True)
        df.insert(0, "rank", range(1, len(df) + 1))
        return df


def solve_linear_system(A: np.ndarray, b: np.ndarray, tol: float = 1e-12) -> np.ndarray:
    """Solve Ax = b by Gaussian elimination with partial pivoting.

    Raises:
        ValueError: if A is not square or b has the wrong length
        UnderdeterminedSystemError: ("singular") if a pivot is numerically zero
    """
    A = np.array(A, dtype=float)
    b = np.array(b, dtype=float).reshape(-1)
    n = A.shape[0]
    if A.ndim != 2 or A.shape[1] != n:
        raise ValueError(f"A must be square, got shape {A.shape}")
    if b.shape[0] != n:
        raise ValueError(f"b has length {b.shape[0]}, expected {n}")

    M = np.hstack([A, b.reshape(-1, 1)])
    threshold = tol * max(1.0, float(np.abs(A).max()) if n else 1.0)

    for col in range(n):
        pivot = col + int(np.argmax(np.abs(M[col:, col])))
        if abs(M[pivot, col]) < threshold:
            raise UnderdeterminedSystemError(
                "singular",
                f"Zero pivot in column {col} of {n}",
                {"column": col, "pivot": float(M[pivot, col])},
            )
        if pivot != col:
            M[[col, pivot]] = M[[pivot, col]]
        factors = M[col + 1:, col] / M[col, col]
        M[col + 1:] -= np.outer(factors, M[col])

    x = np.zeros(n)
    for row in range(n - 1, -1, -1):
        x[row] = (M[row, n] - M[row, row + 1:n] @ x[row + 1:]) / M[row, row]
    return x


def _team_index(games: pl.DataFrame) -> dict[str, int]:
    # DETERMINISM: sorted team order fixes column layout
    teams = sorted(set(games["home_team_id"].to_list()) | set(games["away_team_id"].to_list()))
    return {team: i for i, team in enumerate(teams)}


def team_components(games: pl.DataFrame) -> tuple[int, dict[str, int]]:
    """Connected components of the team participation graph.

    Returns:
        (n_components, team_id -> component label)
    """
    team_index = _team_index(games)
    n = len(team_index)
    if n == 0:
        return 0, {}
    rows = [team_index[t] for t in games["home_team_id"].to_list()]
    cols = [team_index[t] for t in games["away_team_id"].to_list()]
    graph = sparse.coo_matrix((np.ones(len(rows)), (rows, cols)), shape=(n, n))
    n_components, labels = connected_components(graph, directed=False)
    return int(n_components), {team: int(labels[i]) for team, i in team_index.items()}


def build_design_matrix(
    games: pl.DataFrame,
    team_index: Mapping[str, int],
) -> tuple[sparse.csr_matrix, np.ndarray, np.ndarray]:
    """Sparse design matrix, target vector, and row weights.

    Columns: [team_0, ..., team_n-1, hfa]. Each row has +1 at the home team,
    -1 at the away team, and +1 in the hfa column unless the game is neutral.
    """
    n_games = games.height
    n_cols = len(team_index) + 1
    home = games["home_team_id"].to_list()
    away = games["away_team_id"].to_list()
    if "neutral_site" in games.columns:
        neutral = games["neutral_site"].fill_null(False).to_list()
    else:
        neutral = [False] * n_games

    row_indices = []
    col_indices = []
    data_values = []
    for i in range(n_games):
        row_indices += [i, i]
        col_indices += [team_index[home[i]], team_index[away[i]]]
        data_values += [1.0, -1.0]
        if not neutral[i]:
            row_indices.append(i)
            col_indices.append(n_cols - 1)
            data_values.append(1.0)

    A = sparse.csr_matrix(
        (np.array(data_values), (np.array(row_indices, dtype=np.int32), np.array(col_indices, dtype=np.int32))),
        shape=(n_games, n_cols),
        dtype=np.float64,
    )
    b = games[TARGET_COL].cast(pl.Float64).to_numpy()
    if "weight" in games.columns:
        w = games["weight"].cast(pl.Float64).fill_null(1.0).to_numpy()
    else:
        w = np.ones(n_games)
    return A, b, w


def select_training_games(
    games: pl.DataFrame,
    season: Optional[int] = None,
    weeks: Optional[tuple] = None,
    max_abs_spread: Optional[float] = None,
) -> pl.DataFrame:
    """Completed games in the window that carry a market target."""
    missing = [c for c in REQUIRED_COLUMNS if c not in games.columns]
    if missing:
        raise ValueError(f"MFTR games frame is missing required columns: {missing}")

    cond = pl.col(TARGET_COL).is_not_null()
    if "status" in games.columns:
        cond = cond & (pl.col("status") == "final")
    if season is not None and "season" in games.columns:
        cond = cond & (pl.col("season") == season)
    if weeks is not None:
        start, end = weeks
        cond = cond & (pl.col("week") >= start) & (pl.col("week") <= end)
    selected = games.filter(cond)

    if max_abs_spread is not None:
        trimmed = selected.filter(pl.col(TARGET_COL).abs() <= max_abs_spread)
        if trimmed.height < selected.height:
            logger.debug(
                f"Trimmed {selected.height - trimmed.height} games with |spread| > {max_abs_spread}"
            )
        selected = trimmed
    return selected


def _fit_metrics(
    predicted: np.ndarray,
    target: np.ndarray,
    n_teams: int,
    max_rmse: float,
) -> MFTRFitMetrics:
    residual = target - predicted
    rmse = float(np.sqrt(np.mean(residual ** 2)))
    ss_tot = float(np.sum((target - target.mean()) ** 2))
    r2 = 1.0 - float(np.sum(residual ** 2)) / ss_tot if ss_tot > 0 else 0.0
    slope, intercept = simple_ols(predicted, target)

    metrics = MFTRFitMetrics(
        n_games=len(target),
        n_teams=n_teams,
        rmse=rmse,
        r2=r2,
        pearson=pearson(predicted, target),
        spearman=spearman(predicted, target),
        ols_slope=slope,
        ols_intercept=intercept,
    )
    values = [metrics.rmse, metrics.r2, metrics.pearson, metrics.ols_slope, metrics.ols_intercept]
    metrics.acceptable = all(np.isfinite(v) for v in values) and rmse <= max_rmse
    return metrics


def build_mftr(
    games: pl.DataFrame,
    season: int,
    weeks: Optional[tuple] = None,
    lam: Optional[float] = None,
    min_games: Optional[int] = None,
    max_abs_spread: Optional[float] = None,
    prior: Optional[Mapping[str, float]] = None,
    require_connected: bool = True,
) -> MFTRSolution:
    """Fit market-fitted ratings for one training window.

    Args:
        games: Games joined with consensus; needs game_id, week, home_team_id,
            away_team_id, market_hma (home-minus-away frame) and optionally
            neutral_site, status, season, weight
        season: Season to fit
        weeks: Inclusive (first_week, last_week), or None for all weeks
        lam: Ridge strength (default from settings)
        min_games: Minimum training games (default from settings)
        max_abs_spread: Drop games whose target exceeds this magnitude
            (default from settings; pass float("inf") to keep every game)
        prior: team_id -> prior rating. When given, λ tethers team columns to
            the prior and leaves the hfa column free.
        require_connected: Raise when the participation graph is disconnected

    Returns:
        MFTRSolution with centered ratings

    Raises:
        UnderdeterminedSystemError: insufficient_games, disconnected, or singular
    """
    settings = get_settings()
    lam = lam if lam is not None else settings.mftr_lambda
    min_games = min_games if min_games is not None else settings.mftr_min_games
    max_abs_spread = max_abs_spread if max_abs_spread is not None else settings.mftr_max_abs_spread
    if lam < 0:
        raise ValueError(f"lam must be non-negative, got {lam}")

    train = select_training_games(games, season, weeks, max_abs_spread)
    if train.height < min_games:
        raise UnderdeterminedSystemError(
            "insufficient_games",
            f"{train.height} games in window {weeks} (need at least {min_games})",
            {"n_games": train.height, "min_games": min_games, "season": season, "weeks": weeks},
        )

    n_components, labels = team_components(train)
    if n_components > 1:
        sizes = pd.Series(list(labels.values())).value_counts().sort_index().tolist()
        if require_connected:
            raise UnderdeterminedSystemError(
                "disconnected",
                f"Team graph has {n_components} components (sizes {sizes})",
                {"n_components": n_components, "component_sizes": sizes},
            )
        logger.warning(
            f"Team graph has {n_components} components (sizes {sizes}); "
            "cross-component differences are set by the ridge term only"
        )

    team_index = _team_index(train)
    n_teams = len(team_index)
    A, b, w = build_design_matrix(train, team_index)

    AtW = (A.T @ sparse.diags(w)).tocsr()
    lhs = (AtW @ A).toarray()
    rhs = np.asarray(AtW @ b).reshape(-1)

    penalty = np.ones(n_teams + 1)
    target = np.zeros(n_teams + 1)
    if prior is not None:
        penalty[-1] = 0.0
        for team, i in team_index.items():
            target[i] = float(prior.get(team, 0.0))
    lhs += lam * np.diag(penalty)
    rhs += lam * penalty * target

    x = solve_linear_system(lhs, rhs)

    raw = {team: float(x[i]) for team, i in team_index.items()}
    hfa_constant = float(x[-1])
    mean = float(np.mean(x[:-1]))
    ratings = {team: value - mean for team, value in raw.items()}

    predicted = np.asarray(A @ x).reshape(-1)
    metrics = _fit_metrics(predicted, b, n_teams, settings.mftr_max_rmse)

    logger.info(
        f"MFTR {season} weeks={weeks}: {metrics.n_games} games, {n_teams} teams, "
        f"λ={lam}, HFA={hfa_constant:.2f}, RMSE={metrics.rmse:.2f}, "
        f"r={metrics.pearson:.3f}, R²={metrics.r2:.3f}"
    )
    if not metrics.acceptable:
        logger.warning(
            f"MFTR fit unacceptable: RMSE={metrics.rmse:.2f} (max {settings.mftr_max_rmse}), "
            f"slope={metrics.ols_slope:.3f}"
        )

    return MFTRSolution(
        season=season,
        weeks=weeks,
        ratings=ratings,
        hfa_constant=hfa_constant,
        fit_metrics=metrics,
        lam=lam,
        raw_ratings=raw,
    )


def cross_validate_lambda(
    games: pl.DataFrame,
    season: int,
    weeks: Optional[tuple] = None,
    lambdas: Sequence[float] = (0.01, 0.05, 0.1, 0.2, 0.5, 1.0),
    min_games: Optional[int] = None,
    max_abs_spread: Optional[float] = None,
    prior: Optional[Mapping[str, float]] = None,
) -> tuple[float, pd.DataFrame]:
    """Leave-one-week-out λ selection by mean held-out Pearson.

    Returns:
        (best λ, DataFrame with lam, mean_pearson, mean_rmse, n_folds)
    """
    if max_abs_spread is None:
        max_abs_spread = get_settings().mftr_max_abs_spread
    window = select_training_games(games, season, weeks, max_abs_spread)
    fold_weeks = sorted(set(window["week"].to_list()))
    rows = []

    for lam in lambdas:
        fold_r = []
        fold_rmse = []
        for week in fold_weeks:
            held_out = window.filter(pl.col("week") == week)
            train = window.filter(pl.col("week") != week)
            if held_out.height < 3:
                continue
            try:
                solution = build_mftr(
                    train,
                    season,
                    weeks=None,
                    lam=lam,
                    min_games=min_games,
                    prior=prior,
                    require_connected=False,
                )
            except UnderdeterminedSystemError as e:
                logger.debug(f"λ={lam} fold week {week} skipped: {e}")
                continue

            neutral = (
                held_out["neutral_site"].fill_null(False).to_list()
                if "neutral_site" in held_out.columns
                else [False] * held_out.height
            )
            predicted = np.array(
                [
                    solution.predict(h, a, n)
                    for h, a, n in zip(
                        held_out["home_team_id"].to_list(),
                        held_out["away_team_id"].to_list(),
                        neutral,
                    )
                ]
            )
            actual = held_out[TARGET_COL].cast(pl.Float64).to_numpy()
            fold_r.append(pearson(predicted, actual))
            fold_rmse.append(float(np.sqrt(np.mean((actual - predicted) ** 2))))

        rows.append(
            {
                "lam": lam,
                "mean_pearson": float(np.mean(fold_r)) if fold_r else float("nan"),
                "mean_rmse": float(np.mean(fold_rmse)) if fold_rmse else float("nan"),
                "n_folds": len(fold_r),
            }
        )
        logger.debug(f"λ={lam}: {len(fold_r)} folds, mean r={rows[-1]['mean_pearson']:.3f}")

    table = pd.DataFrame(rows)
    valid = table[table["n_folds"] > 0]
    if valid.empty:
        raise UnderdeterminedSystemError(
            "insufficient_games",
            f"No λ fold could be fit for season {season} weeks {weeks}",
            {"n_games": window.height, "weeks": fold_weeks},
        )
    best = float(valid.loc[valid["mean_pearson"].idxmax(), "lam"])
    logger.info(f"Cross-validated λ={best} over {len(fold_weeks)} weeks")
    return best, table
