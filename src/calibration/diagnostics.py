"""Calibration diagnostics: do our ratings and the market agree on direction?

The acceptance gates here test wiring, not model quality. A correctly joined
rating set lines up with the market consensus far better than chance; when it
does not, the cause is almost always a join, frame, or HFA sign defect:

    sign agreement  >= 0.70     sign(rating_diff) == sign(market_hma)
    Pearson r       >= 0.30
    Spearman r      >= 0.30
    neutral games with nonzero HFA      == 0
    non-neutral games with zero HFA     == 0

All correlations pair rating_diff (home - away, no HFA) with the market line in
the home-minus-away frame.
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

import numpy as np
import polars as pl
from scipy.stats import rankdata
from sklearn.linear_model import LinearRegression

from config.settings import get_settings
from src.data.consensus import attach_consensus

logger = logging.getLogger(__name__)

ROOT_CAUSE_JOIN = "join_or_frame_mismatch"
ROOT_CAUSE_MISALIGNMENT = "rating_market_misalignment"
ROOT_CAUSE_HFA = "hfa_sign_error"

# Informational band for the market ~ rating_diff slope
SLOPE_BAND = (0.9, 1.1)


class CalibrationGateFailure(Exception):
    """Ratings failed an acceptance gate and must not be promoted."""

    def __init__(self, report: "CalibrationReport"):
        self.report = report
        failed = ", ".join(g.name for g in report.gates if not g.passed)
        super().__init__(
            f"Calibration gates failed ({failed}); likely cause: {report.root_cause}"
        )


# =============================================================================
# PAIRED STATISTICS
# =============================================================================

def _paired(x, y) -> tuple[np.ndarray, np.ndarray]:
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if x.shape != y.shape:
        raise ValueError(f"Paired sequences differ in length: {len(x)} vs {len(y)}")
    return x, y


def pearson(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson correlation; 0.0 when either side has no variance or n < 2."""
    x, y = _paired(x, y)
    if len(x) < 2:
        return 0.0
    dx = x - x.mean()
    dy = y - y.mean()
    denom = np.sqrt(np.sum(dx ** 2) * np.sum(dy ** 2))
    if denom == 0:
        return 0.0
    return float(np.sum(dx * dy) / denom)


def spearman(x: Sequence[float], y: Sequence[float]) -> float:
    """Spearman correlation: Pearson on average ranks."""
    x, y = _paired(x, y)
    if len(x) < 2:
        return 0.0
    return pearson(rankdata(x, method="average"), rankdata(y, method="average"))


def sign_agreement(x: Sequence[float], y: Sequence[float]) -> float:
    """Fraction of pairs with sign(x) == sign(y) (zero only matches zero)."""
    x, y = _paired(x, y)
    if len(x) == 0:
        return 0.0
    return float(np.mean(np.sign(x) == np.sign(y)))


def simple_ols(x: Sequence[float], y: Sequence[float]) -> tuple[float, float]:
    """Slope and intercept of y ~ x. Constant x gives slope 0, intercept mean(y)."""
    x, y = _paired(x, y)
    if len(x) == 0:
        return 0.0, 0.0
    sxx = np.sum((x - x.mean()) ** 2)
    if sxx == 0:
        return 0.0, float(y.mean())
    slope = float(np.sum((x - x.mean()) * (y - y.mean())) / sxx)
    return slope, float(y.mean() - slope * x.mean())


def ols_with_hfa(
    rating_diff: Sequence[float],
    hfa: Sequence[float],
    market: Sequence[float],
) -> dict:
    """Fit market ~ a + b*rating_diff + c*hfa.

    A correctly wired HFA has c > 0 (the market credits home field in the
    same direction we do).
    """
    rating_diff, market = _paired(rating_diff, market)
    hfa, _ = _paired(hfa, market)
    X = np.column_stack([rating_diff, hfa])
    if len(market) < 3:
        return {"intercept": 0.0, "rating_coef": 0.0, "hfa_coef": 0.0, "r2": 0.0, "n": len(market)}

    model = LinearRegression()
    model.fit(X, market)
    return {
        "intercept": float(model.intercept_),
        "rating_coef": float(model.coef_[0]),
        "hfa_coef": float(model.coef_[1]),
        "r2": float(model.score(X, market)),
        "n": len(market),
    }


@dataclass
class CorrelationSummary:
    n: int
    pearson: float
    spearman: float
    sign_agreement: float
    mean_x: float
    std_x: float
    mean_y: float
    std_y: float


def summarize_pair(x: Sequence[float], y: Sequence[float]) -> CorrelationSummary:
    x, y = _paired(x, y)
    if len(x) == 0:
        return CorrelationSummary(0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)
    return CorrelationSummary(
        n=len(x),
        pearson=pearson(x, y),
        spearman=spearman(x, y),
        sign_agreement=sign_agreement(x, y),
        mean_x=float(x.mean()),
        std_x=float(x.std()),
        mean_y=float(y.mean()),
        std_y=float(y.std()),
    )


# =============================================================================
# AUDIT FRAME AND SLICES
# =============================================================================

def book_depth_bucket(n: Optional[int]) -> str:
    if n is None:
        return "unknown"
    if n < 3:
        return "<3"
    if n <= 5:
        return "3-5"
    if n <= 8:
        return "6-8"
    return "9+"


@dataclass
class SliceStats:
    dimension: str
    label: str
    summary: CorrelationSummary


def _hfa_value(entry) -> float:
    # Accepts a TeamHFA bundle or a bare number
    if entry is None:
        return 0.0
    return float(getattr(entry, "hfa_used", entry))


def build_audit_frame(
    games: pl.DataFrame,
    ratings: Mapping[str, float],
    hfa: Mapping,
    consensus: pl.DataFrame,
) -> pl.DataFrame:
    """Join games, ratings, HFA, and consensus lines into one audit row per game.

    Args:
        games: Game frame with game_id, week, home_team_id, away_team_id, neutral_site
        ratings: team_id -> power rating
        hfa: team_id -> TeamHFA (or hfa in points) for the home team
        consensus: Output of build_consensus_lines (hma frame)

    Returns:
        Frame with rating_diff, hfa, market_hma, book_count and book_bucket.
        Games without a rating for either team or without a consensus line
        are dropped.
    """
    missing = [
        c for c in ("game_id", "week", "home_team_id", "away_team_id") if c not in games.columns
    ]
    if missing:
        raise ValueError(f"Games frame is missing required columns: {missing}")
    if "frame" in consensus.columns:
        frames = set(consensus["frame"].unique().to_list())
        if frames - {"hma"}:
            raise ValueError(f"Consensus must be in the hma frame, got {sorted(frames)}")

    df = games
    if "neutral_site" not in df.columns:
        df = df.with_columns(pl.lit(False).alias("neutral_site"))
    df = attach_consensus(
        df.with_columns(pl.col("neutral_site").fill_null(False)), consensus
    ).filter(pl.col("market_hma").is_not_null())

    home = df["home_team_id"].to_list()
    away = df["away_team_id"].to_list()
    neutral = df["neutral_site"].to_list()
    rated = [h in ratings and a in ratings for h, a in zip(home, away)]
    n_unrated = len(rated) - sum(rated)
    if n_unrated:
        logger.warning(f"Audit dropped {n_unrated} games with an unrated team")

    df = df.with_columns(
        pl.Series("home_rating", [ratings.get(t) for t in home], dtype=pl.Float64),
        pl.Series("away_rating", [ratings.get(t) for t in away], dtype=pl.Float64),
        pl.Series(
            "hfa",
            [0.0 if n else _hfa_value(hfa.get(h)) for h, n in zip(home, neutral)],
            dtype=pl.Float64,
        ),
        pl.Series("_rated", rated, dtype=pl.Boolean),
    ).filter(pl.col("_rated")).drop("_rated")

    df = df.with_columns(
        (pl.col("home_rating") - pl.col("away_rating")).alias("rating_diff"),
    ).with_columns(
        (pl.col("rating_diff") + pl.col("hfa")).alias("predicted_hma"),
        pl.col("book_count")
        .map_elements(book_depth_bucket, return_dtype=pl.Utf8)
        .alias("book_bucket"),
    )
    logger.info(f"Audit frame: {df.height} games")
    return df.sort(["week", "game_id"])


def slice_statistics(
    frame: pl.DataFrame,
    by: str,
    x_col: str = "rating_diff",
    y_col: str = "market_hma",
) -> list[SliceStats]:
    """Correlation summary per value of a slicing column (sorted)."""
    if by not in frame.columns:
        raise ValueError(f"Cannot slice by missing column {by!r}")
    slices = []
    for key in sorted(frame[by].unique().to_list(), key=str):
        part = frame.filter(pl.col(by) == key)
        slices.append(
            SliceStats(
                dimension=by,
                label=str(key),
                summary=summarize_pair(part[x_col].to_numpy(), part[y_col].to_numpy()),
            )
        )
    return slices


# =============================================================================
# GATES AND REPORT
# =============================================================================

@dataclass
class GateResult:
    name: str
    value: float
    threshold: float
    passed: bool
    comparison: str = ">="

    def describe(self) -> str:
        mark = "PASS" if self.passed else "FAIL"
        return f"{mark} {self.name}: {self.value:.3f} (need {self.comparison} {self.threshold:g})"


@dataclass
class CalibrationReport:
    overall: CorrelationSummary
    gates: list
    slope: float
    intercept: float
    ols: dict
    slices: list = field(default_factory=list)
    neutral_hfa_violations: int = 0
    non_neutral_zero_hfa: int = 0
    tail_fraction: float = 0.0
    root_cause: Optional[str] = None

    @property
    def passed(self) -> bool:
        return all(g.passed for g in self.gates)

    @property
    def slope_in_band(self) -> bool:
        return SLOPE_BAND[0] <= self.slope <= SLOPE_BAND[1]

    def raise_for_failure(self) -> None:
        if not self.passed:
            raise CalibrationGateFailure(self)

    def to_text(self) -> str:
        lines = [
            f"Calibration report ({self.overall.n} games)",
            "",
            "Acceptance gates:",
        ]
        lines += [f"  {g.describe()}" for g in self.gates]
        lines += [
            "",
            f"market ~ rating_diff: slope={self.slope:.3f}, intercept={self.intercept:.3f} "
            f"({'in' if self.slope_in_band else 'outside'} {SLOPE_BAND[0]}-{SLOPE_BAND[1]} band, informational)",
            f"market ~ rating_diff + hfa: rating={self.ols.get('rating_coef', 0.0):.3f}, "
            f"hfa={self.ols.get('hfa_coef', 0.0):.3f}, R²={self.ols.get('r2', 0.0):.3f}",
            f"Rating diffs outside 2.5-97.5 pct: {self.tail_fraction:.1%}",
        ]
        if self.slices:
            lines += ["", f"{'Slice':<22}{'N':>5}{'Pearson':>9}{'Spearman':>10}{'Sign':>8}"]
            for s in self.slices:
                label = f"{s.dimension}={s.label}"
                lines.append(
                    f"{label:<22}{s.summary.n:>5}{s.summary.pearson:>9.3f}"
                    f"{s.summary.spearman:>10.3f}{s.summary.sign_agreement:>8.1%}"
                )
        lines += ["", f"Result: {'PASS' if self.passed else 'FAIL'}"]
        if self.root_cause:
            lines.append(f"Likely root cause: {self.root_cause}")
        return "\n".join(lines)


def _root_cause(gates: dict, overall: CorrelationSummary, ols: dict) -> Optional[str]:
    if all(g.passed for g in gates.values()):
        return None
    if overall.pearson < 0 or overall.sign_agreement < 0.5:
        return ROOT_CAUSE_JOIN
    if not gates["neutral_hfa"].passed or not gates["non_neutral_hfa"].passed:
        return ROOT_CAUSE_HFA
    if ols.get("n", 0) >= 3 and ols.get("hfa_coef", 0.0) < 0:
        return ROOT_CAUSE_HFA
    return ROOT_CAUSE_MISALIGNMENT


def run_calibration(
    frame: pl.DataFrame,
    sign_threshold: Optional[float] = None,
    pearson_threshold: Optional[float] = None,
    spearman_threshold: Optional[float] = None,
    slice_by: Sequence[str] = ("week", "neutral_site", "book_bucket"),
) -> CalibrationReport:
    """Evaluate the acceptance gates on an audit frame.

    Args:
        frame: Output of build_audit_frame (rating_diff, hfa, market_hma, neutral_site)
        sign_threshold: Minimum sign agreement (default from settings)
        pearson_threshold: Minimum Pearson r (default from settings)
        spearman_threshold: Minimum Spearman r (default from settings)
        slice_by: Columns to compute per-slice statistics over

    Returns:
        CalibrationReport
    """
    settings = get_settings()
    sign_threshold = sign_threshold if sign_threshold is not None else settings.gate_sign_agreement
    pearson_threshold = pearson_threshold if pearson_threshold is not None else settings.gate_pearson
    spearman_threshold = (
        spearman_threshold if spearman_threshold is not None else settings.gate_spearman
    )

    missing = [c for c in ("rating_diff", "hfa", "market_hma", "neutral_site") if c not in frame.columns]
    if missing:
        raise ValueError(f"Audit frame is missing required columns: {missing}")

    rating_diff = frame["rating_diff"].to_numpy()
    market = frame["market_hma"].to_numpy()
    hfa = frame["hfa"].to_numpy()
    neutral = frame["neutral_site"].fill_null(False).to_numpy().astype(bool)

    overall = summarize_pair(rating_diff, market)
    slope, intercept = simple_ols(rating_diff, market)
    ols = ols_with_hfa(rating_diff, hfa, market)

    neutral_violations = int(np.sum(neutral & (hfa != 0)))
    zero_hfa = int(np.sum(~neutral & (hfa == 0)))

    if len(rating_diff):
        lo, hi = np.percentile(rating_diff, [2.5, 97.5])
        tail_fraction = float(np.mean((rating_diff < lo) | (rating_diff > hi)))
    else:
        tail_fraction = 0.0

    gates = {
        "sign_agreement": GateResult("sign_agreement", overall.sign_agreement, sign_threshold,
                                     overall.sign_agreement >= sign_threshold),
        "pearson": GateResult("pearson", overall.pearson, pearson_threshold,
                              overall.pearson >= pearson_threshold),
        "spearman": GateResult("spearman", overall.spearman, spearman_threshold,
                               overall.spearman >= spearman_threshold),
        "neutral_hfa": GateResult("neutral_hfa", neutral_violations, 0,
                                  neutral_violations == 0, comparison="=="),
        "non_neutral_hfa": GateResult("non_neutral_hfa", zero_hfa, 0,
                                      zero_hfa == 0, comparison="=="),
    }

    slices = []
    for col in slice_by:
        if col in frame.columns:
            slices.extend(slice_statistics(frame, col))

    report = CalibrationReport(
        overall=overall,
        gates=list(gates.values()),
        slope=slope,
        intercept=intercept,
        ols=ols,
        slices=slices,
        neutral_hfa_violations=neutral_violations,
        non_neutral_zero_hfa=zero_hfa,
        tail_fraction=tail_fraction,
        root_cause=_root_cause(gates, overall, ols),
    )

    if report.passed:
        logger.info(
            f"Calibration PASS: n={overall.n}, sign={overall.sign_agreement:.1%}, "
            f"r={overall.pearson:.3f}, rho={overall.spearman:.3f}"
        )
    else:
        failed = [g.name for g in report.gates if not g.passed]
        logger.warning(
            f"Calibration FAIL ({', '.join(failed)}): n={overall.n}, "
            f"sign={overall.sign_agreement:.1%}, r={overall.pearson:.3f}; "
            f"likely cause {report.root_cause}"
        )
    return report


def assert_promotable(report: CalibrationReport) -> None:
    """Raise CalibrationGateFailure unless every gate passed."""
    report.raise_for_failure()
