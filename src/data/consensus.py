"""Market consensus lines from raw per-book quotes.

Frames:
    home line  - the quote as books post it for the home side; negative means
                 the home team is favored (home -7 = home by 7)
    hma        - home-minus-away expected margin; positive means home favored.
                 hma = -home_line. Every consensus line leaves this module in
                 the hma frame.
    favorite   - favorite-centric; always <= 0 (the favorite lays points).
                 favorite = -|hma|

Consensus is the median across books of each book's median quote, computed
only when at least min_books distinct books quoted the game.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Optional

import polars as pl

from config.settings import get_settings

logger = logging.getLogger(__name__)

FRAME_HMA = "hma"
FRAME_FAVORITE = "favorite"

REQUIRED_QUOTE_COLUMNS = ["game_id", "book", "value"]


@dataclass
class MarketConsensusLine:
    game_id: str
    line_type: str
    consensus_value: float
    frame: str
    book_count: int
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    def to_favorite_centric(self) -> "MarketConsensusLine":
        if self.frame == FRAME_FAVORITE:
            return self
        return MarketConsensusLine(
            game_id=self.game_id,
            line_type=self.line_type,
            consensus_value=hma_to_favorite_centric(self.consensus_value),
            frame=FRAME_FAVORITE,
            book_count=self.book_count,
            window_start=self.window_start,
            window_end=self.window_end,
        )


def home_line_to_hma(value: float) -> float:
    """Home-side quote (negative = home favored) to home-minus-away margin."""
    return -value


def hma_to_favorite_centric(value: float) -> float:
    """Home-minus-away margin to favorite-centric (always <= 0)."""
    return -abs(value)


def favorite_side(hma: float) -> Optional[str]:
    """'home', 'away', or None for a pick'em."""
    if hma > 0:
        return "home"
    if hma < 0:
        return "away"
    return None


def _prekick_filter(
    quotes: pl.DataFrame,
    kickoffs: Mapping[str, datetime],
    window: tuple,
) -> pl.DataFrame:
    """Keep quotes timestamped within [kickoff - before, kickoff + after]."""
    before, after = window
    kick_df = pl.DataFrame(
        {
            "game_id": list(kickoffs.keys()),
            "kickoff": list(kickoffs.values()),
        },
        schema={"game_id": quotes.schema["game_id"], "kickoff": quotes.schema["timestamp"]},
    )
    joined = quotes.join(kick_df, on="game_id", how="inner")
    filtered = joined.filter(
        (pl.col("timestamp") >= pl.col("kickoff") - timedelta(minutes=before))
        & (pl.col("timestamp") <= pl.col("kickoff") + timedelta(minutes=after))
    ).drop("kickoff")
    logger.debug(
        f"Pre-kick window (-{before}m, +{after}m): kept {filtered.height} of {quotes.height} quotes"
    )
    return filtered


def build_consensus_lines(
    quotes: pl.DataFrame,
    min_books: Optional[int] = None,
    max_abs_spread: Optional[float] = None,
    kickoffs: Optional[Mapping[str, datetime]] = None,
    window: Optional[tuple] = None,
) -> pl.DataFrame:
    """Median-of-medians consensus per (game, line type) in the hma frame.

    Args:
        quotes: Frame with game_id, book, value (home-side line) and optional
            line_type (default "spread") and timestamp columns
        min_books: Minimum distinct books for a consensus (default from settings)
        max_abs_spread: Consensus values beyond this magnitude are dropped
        kickoffs: game_id -> kickoff time. If given, only quotes inside the
            pre-kick window are used.
        window: (minutes before kickoff, minutes after kickoff)

    Returns:
        Frame with game_id, line_type, consensus_value, frame, book_count,
        window_start, window_end
    """
    settings = get_settings()
    min_books = min_books if min_books is not None else settings.consensus_min_books
    max_abs_spread = (
        max_abs_spread if max_abs_spread is not None else settings.consensus_max_abs_spread
    )
    window = window if window is not None else settings.prekick_window_minutes

    missing = [c for c in REQUIRED_QUOTE_COLUMNS if c not in quotes.columns]
    if missing:
        raise ValueError(f"Quotes frame is missing required columns: {missing}")

    if kickoffs is not None and "timestamp" not in quotes.columns:
        raise ValueError("Quotes need a timestamp column for the pre-kick window filter")

    df = quotes
    if "line_type" not in df.columns:
        df = df.with_columns(pl.lit("spread").alias("line_type"))
    if "timestamp" not in df.columns:
        df = df.with_columns(pl.lit(None, dtype=pl.Datetime).alias("timestamp"))
    df = df.with_columns(pl.col("value").cast(pl.Float64))
    df = df.filter(pl.col("value").is_not_null() & pl.col("value").is_not_nan())

    if kickoffs is not None:
        df = _prekick_filter(df, kickoffs, window)

    per_book = df.group_by(["game_id", "line_type", "book"]).agg(
        pl.col("value").median().alias("book_value"),
        pl.col("timestamp").min().alias("first_ts"),
        pl.col("timestamp").max().alias("last_ts"),
    )
    consensus = per_book.group_by(["game_id", "line_type"]).agg(
        (-pl.col("book_value").median()).alias("consensus_value"),
        pl.len().alias("book_count"),
        pl.col("first_ts").min().alias("window_start"),
        pl.col("last_ts").max().alias("window_end"),
    )

    n_games = consensus.height
    consensus = consensus.filter(pl.col("book_count") >= min_books)
    n_thin = n_games - consensus.height
    n_before_cap = consensus.height
    consensus = consensus.filter(pl.col("consensus_value").abs() <= max_abs_spread)
    n_extreme = n_before_cap - consensus.height

    if n_thin or n_extreme:
        logger.warning(
            f"Consensus excluded {n_thin} games with < {min_books} books "
            f"and {n_extreme} with |line| > {max_abs_spread}"
        )
    logger.info(f"Built consensus for {consensus.height} of {n_games} game lines")

    return consensus.with_columns(
        pl.lit(FRAME_HMA).alias("frame"),
        pl.col("book_count").cast(pl.Int64),
    ).select(
        [
            "game_id",
            "line_type",
            "consensus_value",
            "frame",
            "book_count",
            "window_start",
            "window_end",
        ]
    ).sort(["game_id", "line_type"])


def consensus_for_game(
    quotes: pl.DataFrame,
    line_type: str = "spread",
    min_books: Optional[int] = None,
    max_abs_spread: Optional[float] = None,
) -> Optional[MarketConsensusLine]:
    """Consensus line for a single game's quotes, or None if it does not qualify."""
    lines = build_consensus_lines(quotes, min_books=min_books, max_abs_spread=max_abs_spread)
    lines = lines.filter(pl.col("line_type") == line_type)
    if lines.height == 0:
        return None
    if lines.height > 1:
        raise ValueError(
            f"consensus_for_game got quotes for {lines.height} games; pass one game at a time"
        )
    row = lines.row(0, named=True)
    return MarketConsensusLine(
        game_id=row["game_id"],
        line_type=row["line_type"],
        consensus_value=float(row["consensus_value"]),
        frame=row["frame"],
        book_count=int(row["book_count"]),
        window_start=row["window_start"],
        window_end=row["window_end"],
    )


def attach_consensus(games: pl.DataFrame, consensus: pl.DataFrame) -> pl.DataFrame:
    """Left-join spread consensus onto games as market_hma and book_count."""
    lines = consensus
    if "line_type" in lines.columns:
        lines = lines.filter(pl.col("line_type") == "spread")
    lines = lines.select(
        pl.col("game_id"),
        pl.col("consensus_value").alias("market_hma"),
        pl.col("book_count"),
    )
    existing = [c for c in ("market_hma", "book_count") if c in games.columns]
    return games.drop(existing).join(lines, on="game_id", how="left")
