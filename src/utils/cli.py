"""Argument parsing helpers shared by the scripts."""

import argparse


def parse_week_range(value: str) -> tuple[int, int]:
    """'3-8' -> (3, 8); '5' -> (5, 5)."""
    try:
        if "-" in value:
            start, end = value.split("-", 1)
            weeks = int(start), int(end)
        else:
            weeks = int(value), int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid week range {value!r} (use N or N-M)") from None
    if weeks[0] > weeks[1]:
        raise argparse.ArgumentTypeError(f"Week range {value!r} ends before it starts")
    return weeks
