"""TrafficLens - query and aggregation engine for privacy-friendly web analytics."""

from trafficlens.config import EngineSettings, load_settings
from trafficlens.engine import StatsEngine
from trafficlens.errors import (
    LookupMiss,
    QueryValidationError,
    StoreError,
    TrafficLensError,
    UnsupportedComparisonError,
)
from trafficlens.registry import SiteRegistry

__version__ = "0.1.0"

__all__ = [
    "EngineSettings",
    "LookupMiss",
    "QueryValidationError",
    "SiteRegistry",
    "StatsEngine",
    "StoreError",
    "TrafficLensError",
    "UnsupportedComparisonError",
    "load_settings",
]
