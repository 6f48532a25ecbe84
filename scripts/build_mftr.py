#!/usr/bin/env python3
"""Fit market-fitted team ratings (MFTR) from games and book quotes.

Usage:
    python3 scripts/build_mftr.py 2025 --weeks 1-8
    python3 scripts/build_mftr.py 2025 --weeks 1-8 --cv          # λ by leave-one-week-out
    python3 scripts/build_mftr.py 2025 --lam 0.1 --trim 35 --out data/outputs/mftr

Reads games.parquet and quotes.parquet from the feature store directory.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import polars as pl

from config.settings import get_settings
from src.models.mftr import UnderdeterminedSystemError
from src.ratings.generate import fit_market_ratings
from src.utils.cli import parse_week_range

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description="Fit market-fitted team ratings")
    parser.add_argument("season", type=int, help="Season year")
    parser.add_argument("--weeks", type=parse_week_range, default=None, help="Week range, e.g. 1-8")
    parser.add_argument("--lam", type=float, default=None, help="Ridge λ (default from settings)")
    parser.add_argument("--cv", action="store_true", help="Choose λ by leave-one-week-out CV")
    parser.add_argument(
        "--trim",
        type=float,
        default=None,
        help="Drop games whose consensus |spread| exceeds this (default from settings)",
    )
    parser.add_argument("--store", type=Path, default=None, help="Directory with games/quotes parquet")
    parser.add_argument("--out", type=Path, default=None, help="Output directory")
    return parser.parse_args()


def main():
    args = parse_args()
    settings = get_settings()
    store_dir = args.store or settings.store_dir

    games_path = store_dir / "games.parquet"
    quotes_path = store_dir / "quotes.parquet"
    for path in (games_path, quotes_path):
        if not path.exists():
            print(f"ERROR: missing {path}", file=sys.stderr)
            sys.exit(1)

    games = pl.read_parquet(games_path)
    quotes = pl.read_parquet(quotes_path)

    try:
        solution, cv_table = fit_market_ratings(
            args.season,
            games,
            quotes,
            weeks=args.weeks,
            lam=args.lam,
            cross_validate=args.cv,
            max_abs_spread=args.trim,
        )
    except UnderdeterminedSystemError as e:
        print(f"ERROR: MFTR could not be fit: {e}", file=sys.stderr)
        if e.details:
            print(f"  details: {e.details}", file=sys.stderr)
        sys.exit(1)

    m = solution.fit_metrics
    print(f"\nMFTR {args.season} weeks={args.weeks or 'all'} λ={solution.lam}")
    print(f"  games={m.n_games} teams={m.n_teams} HFA={solution.hfa_constant:.2f}")
    print(f"  RMSE={m.rmse:.2f} R²={m.r2:.3f} r={m.pearson:.3f} rho={m.spearman:.3f}")
    print(f"  OLS target~pred slope={m.ols_slope:.3f} intercept={m.ols_intercept:.3f}")
    print(f"  acceptable={m.acceptable}")
    if cv_table is not None:
        print("\nλ cross-validation:")
        print(cv_table.to_string(index=False))

    out_dir = args.out or settings.outputs_dir / "mftr"
    out_dir.mkdir(parents=True, exist_ok=True)
    suffix = f"{args.season}" + (f"_w{args.weeks[0]}-{args.weeks[1]}" if args.weeks else "")
    solution.to_frame().to_csv(out_dir / f"mftr_{suffix}.csv", index=False)
    with open(out_dir / f"mftr_{suffix}.json", "w") as f:
        json.dump(
            {
                "season": solution.season,
                "weeks": list(solution.weeks) if solution.weeks else None,
                "lam": solution.lam,
                "hfa_constant": solution.hfa_constant,
                "fit_metrics": vars(m),
                "ratings": solution.ratings,
            },
            f,
            indent=2,
        )
    print(f"\nSaved to {out_dir}")

    if not m.acceptable:
        sys.exit(2)


if __name__ == "__main__":
    main()
