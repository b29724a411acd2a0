"""Health check endpoint."""
import time

import duckdb
from fastapi import APIRouter, Depends, Request

from core.exceptions import StatsError
from core.observability import Timer, get_correlation_id, get_logger
from core.stats_service import StatsService
from web.config import VERSION
from web.schemas import HealthResponse
from ._deps import START_TIME, get_service, limiter

router = APIRouter()
logger = get_logger(__name__)


@router.get("/health", response_model=HealthResponse)
@limiter.limit("60/minute")
async def health_check(request: Request, service: StatsService = Depends(get_service)):
    """Health check endpoint for Docker/load balancer monitoring."""
    uptime_seconds = int(time.time() - START_TIME)

    store_stats = None
    latency_ms = None
    try:
        with Timer("health_check_db") as timer:
            store_stats = await service.store.get_stats()
        store_status = "connected"
        latency_ms = round(timer.elapsed_ms, 2)
    except (StatsError, duckdb.Error) as e:
        logger.warning(f"Health check store error: {e}")
        store_status = f"error: {e}"

    if not service.is_ready:
        status = "starting"
    elif store_stats is None:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "version": VERSION,
        "uptime_seconds": uptime_seconds,
        "ready": service.is_ready,
        "correlation_id": get_correlation_id(),
        "store": {
            "status": store_status,
            "latency_ms": latency_ms,
            **(store_stats or {}),
        },
        "cache": service.get_cache_stats(),
    }
