"""
Core library for the booking statistics engine.

This package contains the engine shared by the web API and the scheduler:
- exceptions: Error taxonomy
- models: Filters, rollup records and query results
- cache: In-memory result cache
- store: DuckDB store, rollup table and derived views
- stats_service: Recompute and query façade
- config: Centralized configuration
"""

# Import in dependency order
from core.exceptions import (
    StatsError,
    StoreUnavailableError,
    MalformedRowError,
    QueryTimeoutError,
    RowLimitExceededError,
    RecomputeFailureError,
    ValidationError,
)

from core.models import (
    Granularity,
    StatsFilter,
    StatsResult,
)

from core.config import config

__all__ = [
    # Exceptions
    "StatsError",
    "StoreUnavailableError",
    "MalformedRowError",
    "QueryTimeoutError",
    "RowLimitExceededError",
    "RecomputeFailureError",
    "ValidationError",
    # Models
    "Granularity",
    "StatsFilter",
    "StatsResult",
    # Config
    "config",
]
