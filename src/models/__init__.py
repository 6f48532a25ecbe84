"""Model components package.

- compute_ratings: weighted z-score power ratings from team features
- build_mftr: market-fitted team ratings (ridge least squares on consensus spreads)
"""

from .power_ratings import TeamRating, compute_ratings
from .mftr import MFTRSolution, UnderdeterminedSystemError, build_mftr

__all__ = [
    "TeamRating",
    "compute_ratings",
    "MFTRSolution",
    "UnderdeterminedSystemError",
    "build_mftr",
]
