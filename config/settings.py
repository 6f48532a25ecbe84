"""Application settings and configuration."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass
class Settings:
    """Application configuration settings.

    These are defaults only. Every computation in src/ takes its parameters
    explicitly and falls back to these values when the caller passes None.
    """

    # Feature Loading
    game_window: int = 10  # Most recent N game-level records averaged
    game_confidence_games: int = 8  # Games needed for full confidence in game tier
    season_confidence: float = 0.7
    baseline_confidence: float = 0.3
    baseline_model_version: str = "v1"  # Prior model used by the baseline tier
    feature_workers: int = field(
        default_factory=lambda: int(os.getenv("FEATURE_WORKERS", "8"))
    )

    # Normalization
    zscore_min_std: float = 1e-9  # Below this a metric is treated as constant

    # Rating scale (points). Net ratings are rescaled to this population std
    # whenever they will be differenced into a point margin.
    rating_target_std: float = 10.0

    # Home Field Advantage (empirical-Bayes shrinkage)
    base_hfa: float = 2.0  # Prior HFA used in the residual expectation
    hfa_shrink_k: float = 8.0  # shrink = n / (n + k)
    hfa_min: float = 0.5
    hfa_max: float = 5.0
    hfa_low_sample_games: int = 4  # Below this, shrink weight is capped
    hfa_low_sample_max_weight: float = 0.4
    hfa_outlier_threshold: float = 8.0
    hfa_league_filter: float = 20.0  # |raw| above this excluded from league median
    hfa_league_bounds: tuple = (1.0, 4.0)
    max_regular_season_week: int = 14  # Weeks beyond this are bowls/playoffs

    # Market consensus
    consensus_min_books: int = 3
    consensus_max_abs_spread: float = 60.0
    prekick_window_minutes: tuple = (60, 5)  # (before kickoff, after kickoff)

    # Market-Fitted Team Ratings
    mftr_lambda: float = field(
        default_factory=lambda: float(os.getenv("MFTR_LAMBDA", "0.01"))
    )
    mftr_min_games: int = 50
    mftr_max_abs_spread: float = 35.0  # Training games with |market_hma| above this are dropped
    mftr_max_rmse: float = 14.0  # Fit above this is reported as unacceptable

    # Calibration gates (correctness of wiring, not model quality)
    gate_sign_agreement: float = 0.70
    gate_pearson: float = 0.30
    gate_spearman: float = 0.30

    # Paths
    @property
    def project_root(self) -> Path:
        return Path(__file__).parent.parent

    @property
    def data_dir(self) -> Path:
        return self.project_root / "data"

    @property
    def store_dir(self) -> Path:
        return Path(os.getenv("FEATURE_STORE_DIR", str(self.data_dir / "store")))

    @property
    def outputs_dir(self) -> Path:
        return self.data_dir / "outputs"

    def validate(self) -> list[str]:
        """Validate settings. Returns list of errors."""
        errors = []
        if self.hfa_min > self.hfa_max:
            errors.append(f"hfa_min ({self.hfa_min}) exceeds hfa_max ({self.hfa_max})")
        if self.mftr_lambda <= 0:
            errors.append("MFTR_LAMBDA must be positive for a uniquely solvable system")
        if self.consensus_min_books < 1:
            errors.append("consensus_min_books must be at least 1")
        return errors


# Singleton instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
