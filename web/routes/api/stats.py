"""Statistics query, chart, ranking and admin endpoints."""
from datetime import date
from typing import List, Optional

import duckdb
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from core.exceptions import StatsError, ValidationError
from core.models import Granularity, StatsFilter
from core.observability import get_logger
from core.stats_service import StatsService
from web.config import RATE_LIMIT
from web.schemas import (
    CacheInvalidateRequest,
    ChartResponse,
    HotQueriesResponse,
    JobsResponse,
    MerchantRanking,
    RecomputeRequest,
    RecomputeResponse,
    StatsResponse,
)
from ._deps import get_scheduler, get_service, limiter, require_admin

router = APIRouter(prefix="/stats")
logger = get_logger(__name__)


def _filter_params(
    dateFrom: Optional[str] = Query(None, description="Start date (YYYY-MM-DD)"),
    dateTo: Optional[str] = Query(None, description="End date (YYYY-MM-DD)"),
    regionId: Optional[int] = Query(None),
    priceRange: Optional[str] = Query(None),
    merchantId: Optional[int] = Query(None),
    statType: Optional[str] = Query(None, description="hourly, daily, weekly or monthly"),
) -> dict:
    params = {
        "dateFrom": dateFrom,
        "dateTo": dateTo,
        "regionId": regionId,
        "priceRange": priceRange,
        "merchantId": merchantId,
        "statType": statType,
    }
    return {k: v for k, v in params.items() if v is not None}


@router.get("", response_model=StatsResponse)
@limiter.limit(RATE_LIMIT)
async def get_stats(
    request: Request,
    params: dict = Depends(_filter_params),
    service: StatsService = Depends(get_service),
):
    """Per-date order and evaluation statistics, newest first."""
    try:
        stats_filter = StatsFilter.from_params(params)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    result = await service.query(stats_filter)
    if "error" in result:
        raise HTTPException(status_code=503, detail=result["error"])
    return result


@router.get("/hot", response_model=HotQueriesResponse)
@limiter.limit(RATE_LIMIT)
async def get_hot_queries(request: Request, service: StatsService = Depends(get_service)):
    """Today/week/month summaries with top regions and merchants."""
    try:
        return await service.get_hot_queries()
    except (StatsError, duckdb.Error) as e:
        logger.error(f"Hot queries failed: {e}")
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/charts/{chart_type}", response_model=ChartResponse)
@limiter.limit(RATE_LIMIT)
async def get_chart(
    request: Request,
    chart_type: str,
    params: dict = Depends(_filter_params),
    service: StatsService = Depends(get_service),
):
    try:
        return await service.get_chart_data(chart_type, params)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (StatsError, duckdb.Error) as e:
        logger.error(f"Chart {chart_type} failed: {e}")
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/rankings/merchants", response_model=List[MerchantRanking])
@limiter.limit(RATE_LIMIT)
async def get_merchant_rankings(
    request: Request,
    regionId: Optional[int] = Query(None),
    priceRange: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    service: StatsService = Depends(get_service),
):
    """Merchants by average user score, then number of evaluations."""
    try:
        return await service.get_merchant_rankings(regionId, priceRange, limit)
    except (StatsError, duckdb.Error) as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/evaluations/summary")
@limiter.limit(RATE_LIMIT)
async def get_evaluation_summary(
    request: Request,
    dateFrom: date = Query(...),
    dateTo: date = Query(...),
    service: StatsService = Depends(get_service),
):
    if dateFrom > dateTo:
        raise HTTPException(status_code=400, detail="dateFrom must not be after dateTo")
    try:
        return await service.get_evaluation_summary(dateFrom, dateTo)
    except (StatsError, duckdb.Error) as e:
        raise HTTPException(status_code=503, detail=str(e))


# ─── Admin ────────────────────────────────────────────────────────────────────

@router.get("/cache")
@limiter.limit(RATE_LIMIT)
async def get_cache_stats(request: Request, service: StatsService = Depends(get_service)):
    return service.get_cache_stats()


@router.post("/cache/invalidate", dependencies=[Depends(require_admin)])
@limiter.limit("10/minute")
async def invalidate_cache(
    request: Request,
    body: CacheInvalidateRequest,
    service: StatsService = Depends(get_service),
):
    """Drop cached results whose key contains ``pattern`` (all when omitted)."""
    removed = service.invalidate(body.pattern)
    logger.info(f"Invalidated {removed} cache entries", extra={"pattern": body.pattern})
    return {"invalidated": removed, "pattern": body.pattern}


@router.post("/recompute", response_model=RecomputeResponse, dependencies=[Depends(require_admin)])
@limiter.limit("5/minute")
async def recompute(
    request: Request,
    body: RecomputeRequest,
    service: StatsService = Depends(get_service),
):
    """Re-run rollups for every closed period in a date range."""
    try:
        granularity = Granularity(body.granularity)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown granularity: {body.granularity}")
    if body.dateFrom > body.dateTo:
        raise HTTPException(status_code=400, detail="dateFrom must not be after dateTo")

    try:
        return await service.backfill(granularity, body.dateFrom, body.dateTo)
    except StatsError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/jobs", response_model=JobsResponse)
@limiter.limit(RATE_LIMIT)
async def get_jobs(request: Request, scheduler=Depends(get_scheduler)):
    if scheduler is None or not scheduler.is_running:
        return {"status": "not_running", "jobs": []}
    return {"status": "running", "jobs": scheduler.get_jobs()}


@router.post("/jobs/{job_id}/run", dependencies=[Depends(require_admin)])
@limiter.limit("5/minute")
async def run_job(request: Request, job_id: str, scheduler=Depends(get_scheduler)):
    if scheduler is None or not scheduler.is_running:
        raise HTTPException(status_code=503, detail="Scheduler not running")
    try:
        return await scheduler.run_job_now(job_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
