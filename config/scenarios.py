"""Weight scenarios for the power rating computer.

A scenario is an immutable value object passed explicitly into
compute_ratings(). Several scenarios can be evaluated side by side; nothing
here is read from module state at computation time.

Sign convention:
    Every weight is applied to a "higher is better" z-score. Defensive metrics
    (yards/success/EPA conceded) are z-scored and then sign-inverted BEFORE
    weighting, so defensive weights are positive too.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional

# Metric names shared by the feature store, loader, and rating computer
OFFENSIVE_METRICS = (
    "ypp_off",
    "success_off",
    "epa_off",
    "pace_off",
    "pass_ypa_off",
    "rush_ypc_off",
)
DEFENSIVE_METRICS = (
    "ypp_def",
    "success_def",
    "epa_def",
    "pace_def",
    "pass_ypa_def",
    "rush_ypc_def",
)
ALL_METRICS = OFFENSIVE_METRICS + DEFENSIVE_METRICS

# Efficiency metrics that qualify a game-level record for the game tier
EFFICIENCY_METRICS = ("ypp_off", "ypp_def", "success_off", "success_def")

# Defensive yardage metrics; when a team has none of these, defensive weight
# is renormalized over success/EPA only
DEFENSIVE_YARDAGE_METRICS = ("ypp_def", "pass_ypa_def", "rush_ypc_def")

# Core metrics used for rating confidence (feature coverage)
CONFIDENCE_METRICS = (
    "ypp_off",
    "pass_ypa_off",
    "rush_ypc_off",
    "success_off",
    "epa_off",
    "ypp_def",
    "success_def",
    "epa_def",
)


def _frozen(weights: Mapping[str, float]) -> Mapping[str, float]:
    return MappingProxyType(dict(weights))


@dataclass(frozen=True)
class WeightScenario:
    """Immutable rating weight configuration.

    Attributes:
        name: Scenario identifier (also used as the default model_version)
        offensive: metric -> weight applied to the offensive z-score
        defensive: metric -> weight applied to the inverted defensive z-score
        target_std: If set, net ratings are centered and rescaled so their
            population std equals this value (points scale). If None, ratings
            are raw z-composites with no point interpretation.
        renormalize_missing_defense: Renormalize defensive weights over
            success/EPA for teams with no defensive yardage metrics
        description: Free text
    """

    name: str
    offensive: Mapping[str, float]
    defensive: Mapping[str, float]
    target_std: Optional[float] = None
    renormalize_missing_defense: bool = True
    description: str = ""

    def __post_init__(self):
        unknown_off = set(self.offensive) - set(OFFENSIVE_METRICS)
        unknown_def = set(self.defensive) - set(DEFENSIVE_METRICS)
        if unknown_off or unknown_def:
            raise ValueError(
                f"Scenario {self.name!r} has unknown metrics: "
                f"{sorted(unknown_off | unknown_def)}"
            )
        if self.target_std is not None and self.target_std <= 0:
            raise ValueError(f"target_std must be positive, got {self.target_std}")
        object.__setattr__(self, "offensive", _frozen(self.offensive))
        object.__setattr__(self, "defensive", _frozen(self.defensive))

    @property
    def is_point_scaled(self) -> bool:
        """True when ratings from this scenario may be differenced into points."""
        return self.target_std is not None


V1_OFFENSIVE = {
    "ypp_off": 0.30,
    "pass_ypa_off": 0.20,
    "rush_ypc_off": 0.15,
    "success_off": 0.20,
    "epa_off": 0.15,
}
V1_DEFENSIVE = {
    "ypp_def": 0.20,
    "pass_ypa_def": 0.20,
    "rush_ypc_def": 0.15,
    "success_def": 0.25,
    "epa_def": 0.20,
}

SCENARIOS: dict[str, WeightScenario] = {
    "v1": WeightScenario(
        name="v1",
        offensive=V1_OFFENSIVE,
        defensive=V1_DEFENSIVE,
        target_std=None,
        description="Weighted z-score composite (unscaled index)",
    ),
    "v1_points": WeightScenario(
        name="v1_points",
        offensive=V1_OFFENSIVE,
        defensive=V1_DEFENSIVE,
        target_std=10.0,
        description="v1 weights rescaled to a 10-point population std",
    ),
    "core_efficiency": WeightScenario(
        name="core_efficiency",
        offensive={"ypp_off": 0.30, "success_off": 0.20, "epa_off": 0.15},
        defensive={"ypp_def": 0.20, "success_def": 0.25, "epa_def": 0.20},
        target_std=10.0,
        renormalize_missing_defense=False,
        description="YPP/success/EPA only, points scale",
    ),
}


def get_scenario(name: str) -> WeightScenario:
    """Look up a registered scenario by name."""
    try:
        return SCENARIOS[name]
    except KeyError:
        raise KeyError(
            f"Weight scenario {name!r} not found. Available: {', '.join(sorted(SCENARIOS))}"
        ) from None
