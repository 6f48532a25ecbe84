"""Configuration package for the team strength ratings core."""

from .settings import Settings, get_settings
from .scenarios import SCENARIOS, WeightScenario, get_scenario

__all__ = [
    "Settings",
    "get_settings",
    "SCENARIOS",
    "WeightScenario",
    "get_scenario",
]
