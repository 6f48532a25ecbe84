#!/usr/bin/env python3
"""Generate and display power ratings for a season from a parquet feature store.

Usage:
    python3 scripts/show_ratings.py 2025                       # Top 25
    python3 scripts/show_ratings.py 2025 --top 50              # Top 50
    python3 scripts/show_ratings.py 2025 --top 0               # All teams
    python3 scripts/show_ratings.py 2025 --scenario v1         # Unscaled index
    python3 scripts/show_ratings.py 2025 --no-hfa              # Skip team HFA
    python3 scripts/show_ratings.py 2025 --csv out.csv         # Also write CSV

Uses src.ratings.generate (single source of truth) for all computation.
"""

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from config.scenarios import SCENARIOS, get_scenario
from config.settings import get_settings
from src.data.feature_store import FrameFeatureStore
from src.models.power_ratings import ratings_to_frame
from src.ratings.generate import generate_ratings

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description="Show team power ratings")
    parser.add_argument("season", type=int, help="Season year")
    parser.add_argument("--top", type=int, default=25, help="Rows to show (0 = all)")
    parser.add_argument(
        "--scenario",
        default="v1_points",
        choices=sorted(SCENARIOS),
        help="Weight scenario (default: v1_points)",
    )
    parser.add_argument("--store", type=Path, default=None, help="Feature store directory")
    parser.add_argument("--no-hfa", action="store_true", help="Skip team HFA estimation")
    parser.add_argument("--csv", type=Path, default=None, help="Write the full table to CSV")
    parser.add_argument("--debug", action="store_true", help="Debug logging")
    return parser.parse_args()


def show_ratings(ratings, meta, top_n: int) -> None:
    df = ratings_to_frame(ratings)
    if top_n:
        df = df.head(top_n)

    scale = "points" if meta["point_scaled"] else "z-index (not points)"
    print(f"\n## {meta['season']} Power Ratings ({meta['model_version']}, {scale})\n")
    print("| Rank | Team | Power | Offense | Defense | HFA | Source | Conf |")
    print("|------|------|-------|---------|---------|-----|--------|------|")
    for _, row in df.iterrows():
        hfa = row.get("hfa_team")
        hfa_str = f"{hfa:.2f}" if hfa is not None and hfa == hfa else "-"
        print(
            f"| {int(row['rank'])} "
            f"| {row['team_id']} "
            f"| {row['power_rating']:+.2f} "
            f"| {row['offense_rating']:+.2f} "
            f"| {row['defense_rating']:+.2f} "
            f"| {hfa_str} "
            f"| {row['data_source']} "
            f"| {row['confidence']:.2f} |"
        )

    sources = ", ".join(f"{k}={v}" for k, v in meta["data_sources"].items())
    note = f"{meta['n_teams']} teams ({sources})."
    if meta["league_hfa"] is not None:
        note += f" League HFA {meta['league_hfa']:.2f}."
    print(f"\n*{note}*")


def main():
    args = parse_args()
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    store_dir = args.store or get_settings().store_dir
    if not store_dir.exists():
        print(f"ERROR: feature store not found at {store_dir}", file=sys.stderr)
        sys.exit(1)

    store = FrameFeatureStore.from_parquet_dir(store_dir)
    games = None if args.no_hfa or store.games.height == 0 else store.games
    ratings, meta = generate_ratings(
        args.season,
        store,
        scenario=get_scenario(args.scenario),
        games=games,
    )
    if not ratings:
        print(f"No teams found for {args.season} in {store_dir}", file=sys.stderr)
        sys.exit(1)

    show_ratings(ratings, meta, args.top)

    if args.csv:
        args.csv.parent.mkdir(parents=True, exist_ok=True)
        ratings_to_frame(ratings).to_csv(args.csv, index=False)
        print(f"Saved {args.csv}", file=sys.stderr)


if __name__ == "__main__":
    main()
