"""
Pydantic response models for API endpoints.

Provides type-safe response models with automatic validation and documentation.
"""
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════════════════════
# HEALTH CHECK
# ═══════════════════════════════════════════════════════════════════════════════

class StoreStats(BaseModel):
    """DuckDB store statistics."""
    status: str
    latency_ms: Optional[float] = None
    orders: Optional[int] = None
    evaluations: Optional[int] = None
    merchants: Optional[int] = None
    regions: Optional[int] = None
    order_stats: Optional[int] = None
    db_size_mb: Optional[float] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(description="Service status: healthy, starting or degraded")
    version: str = Field(description="Application version")
    uptime_seconds: int = Field(description="Uptime in seconds")
    ready: bool = Field(description="Whether the stats engine finished startup")
    correlation_id: Optional[str] = Field(None, description="Request correlation ID")
    store: StoreStats
    cache: Optional[Dict[str, Any]] = Field(None, description="Result cache statistics")


# ═══════════════════════════════════════════════════════════════════════════════
# STATISTICS
# ═══════════════════════════════════════════════════════════════════════════════

class StatsRowResponse(BaseModel):
    """Aggregates for one stat date."""
    statDate: date
    totalOrders: int = 0
    confirmedOrders: int = 0
    completedOrders: int = 0
    cancelledOrders: int = 0
    avgUserScore: float = 0.0
    avgMerchantScore: float = 0.0
    evaluationCount: int = 0


class StatsResponse(BaseModel):
    """Statistics query result, newest date first."""
    data: List[StatsRowResponse] = Field(default_factory=list)
    fromCache: bool = Field(description="Served from the result cache (informational)")
    source: str = Field(description="cache, rollup or realtime")


class TopRegion(BaseModel):
    regionId: int
    regionName: Optional[str] = None
    totalOrders: int
    avgScore: float
    evaluationCount: int


class MerchantRanking(BaseModel):
    merchantId: int
    teacherName: Optional[str] = None
    regionId: Optional[int] = None
    regionName: Optional[str] = None
    avgScore: float
    evaluationCount: int
    priceRange: str


class HotQueriesResponse(BaseModel):
    """Dashboard summary bundle, cached for 30 minutes."""
    date: str = Field(description="Service-local date of the summary (YYYY-MM-DD)")
    today: StatsRowResponse
    week: StatsRowResponse
    month: StatsRowResponse
    topRegions: List[TopRegion]
    topMerchants: List[MerchantRanking]
    fromCache: bool


class ChartResponse(BaseModel):
    """Chart series; item shape depends on chartType."""
    chartType: str
    startDate: date
    endDate: date
    data: List[Dict[str, Any]]
    fromCache: bool


# ═══════════════════════════════════════════════════════════════════════════════
# ADMIN
# ═══════════════════════════════════════════════════════════════════════════════

class CacheInvalidateRequest(BaseModel):
    """Cache invalidation request; no pattern clears everything."""
    pattern: Optional[str] = Field(None, max_length=100, description="Substring of keys to drop, e.g. 'stats'")


class RecomputeRequest(BaseModel):
    """Manual rollup re-run for stale periods."""
    granularity: str = Field(description="hourly, daily, weekly or monthly")
    dateFrom: date
    dateTo: date


class RecomputeResponse(BaseModel):
    granularity: str
    periods: int
    records: int
    failed: List[str] = Field(default_factory=list, description="Start of each period that failed")


class JobInfo(BaseModel):
    """Background job information."""
    id: str = Field(description="Unique job identifier")
    name: str = Field(description="Human-readable job name")
    description: str = Field(description="Job description")
    trigger: str = Field(description="Trigger type and schedule")
    next_run: Optional[str] = Field(None, description="Next scheduled run (ISO format)")
    last_run: Optional[str] = Field(None, description="Last run time (ISO format)")
    last_status: Optional[str] = Field(None, description="Last run status")
    last_duration_ms: Optional[float] = Field(None, description="Last run duration in ms")
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None


class JobsResponse(BaseModel):
    """Background jobs status response."""
    status: str = Field(description="Scheduler status: running/not_running")
    jobs: List[JobInfo] = Field(default_factory=list, description="Registered jobs")
