"""Adjustments package."""

from .home_field import HomeFieldAdvantage, TeamHFA

__all__ = [
    "HomeFieldAdvantage",
    "TeamHFA",
]
