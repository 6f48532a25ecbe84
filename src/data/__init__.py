"""Data access package: feature store, tiered feature loading, market consensus."""

from .feature_store import FeatureStoreReader, FrameFeatureStore
from .feature_loader import DataGapError, DataSource, FeatureLoader, TeamFeatures, resolve_tier
from .consensus import MarketConsensusLine, build_consensus_lines

__all__ = [
    "FeatureStoreReader",
    "FrameFeatureStore",
    "DataGapError",
    "DataSource",
    "FeatureLoader",
    "TeamFeatures",
    "resolve_tier",
    "MarketConsensusLine",
    "build_consensus_lines",
]
