"""Engine settings.

the few policies that are judgement calls rather than arithmetic live here so
they can be flipped per deployment from a yaml file instead of a code change.
"""

import logging
from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from trafficlens.models.query import DEFAULT_SAMPLE_THRESHOLD, ComparisonMode

logger = logging.getLogger(__name__)


class UnknownPeriodPolicy(str, Enum):
    DEFAULT = "default"  # treat as 30d, what the dashboard has always done
    REJECT = "reject"


class EngineSettings(BaseModel):
    sample_threshold: int = DEFAULT_SAMPLE_THRESHOLD
    default_limit: int = Field(default=9, ge=1)
    default_page: int = Field(default=1, ge=1)
    unknown_period_policy: UnknownPeriodPolicy = UnknownPeriodPolicy.DEFAULT
    # "all" buckets by month once it spans more than a month, else by date
    all_period_month_interval: bool = True
    top_stats_comparison: ComparisonMode = ComparisonMode.PREVIOUS_PERIOD
    max_workers: int = Field(default=4, ge=1)
    # yaml with countries/subdivisions/cities, the builtin table when unset
    geo_file: Path | None = None


def load_settings(path: str | Path | None) -> EngineSettings:
    """Load settings from a yaml file. Missing file or None means defaults."""
    if path is None:
        return EngineSettings()

    path = Path(path)
    if not path.exists():
        logger.debug("no settings file at %s, using defaults", path)
        return EngineSettings()

    with open(path) as f:
        data = yaml.safe_load(f)

    if data is None:
        return EngineSettings()
    return EngineSettings.model_validate(data)
