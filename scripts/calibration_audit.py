#!/usr/bin/env python3
"""Audit ratings against market consensus before promoting them.

Runs the acceptance gates (sign agreement, Pearson, Spearman, neutral-site
HFA checks) and exits 1 if any fails.

Usage:
    python3 scripts/calibration_audit.py 2025 --weeks 1-8
    python3 scripts/calibration_audit.py 2025 --scenario core_efficiency --report audit.txt
"""

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import polars as pl

from config.scenarios import SCENARIOS, get_scenario
from config.settings import get_settings
from src.calibration.diagnostics import CalibrationGateFailure, assert_promotable
from src.data.feature_store import FrameFeatureStore
from src.ratings.generate import generate_ratings, run_market_audit
from src.utils.cli import parse_week_range

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(description="Calibration gate audit")
    parser.add_argument("season", type=int, help="Season year")
    parser.add_argument("--weeks", type=parse_week_range, default=None, help="Week range, e.g. 1-8")
    parser.add_argument(
        "--scenario",
        default="v1_points",
        choices=sorted(SCENARIOS),
        help="Weight scenario (must be point-scaled)",
    )
    parser.add_argument("--store", type=Path, default=None, help="Feature store directory")
    parser.add_argument("--report", type=Path, default=None, help="Write the text report here")
    return parser.parse_args()


def main():
    args = parse_args()
    store_dir = args.store or get_settings().store_dir
    quotes_path = store_dir / "quotes.parquet"
    if not quotes_path.exists():
        print(f"ERROR: missing {quotes_path}", file=sys.stderr)
        sys.exit(1)

    scenario = get_scenario(args.scenario)
    if not scenario.is_point_scaled:
        print(f"ERROR: scenario {scenario.name} is not point-scaled", file=sys.stderr)
        sys.exit(1)

    store = FrameFeatureStore.from_parquet_dir(store_dir)
    ratings, meta = generate_ratings(args.season, store, scenario=scenario, games=store.games)
    report = run_market_audit(
        args.season,
        ratings,
        meta["hfa"],
        store.games,
        pl.read_parquet(quotes_path),
        weeks=args.weeks,
    )

    text = report.to_text()
    print(text)
    if args.report:
        args.report.parent.mkdir(parents=True, exist_ok=True)
        args.report.write_text(text + "\n")

    try:
        assert_promotable(report)
    except CalibrationGateFailure as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
