"""
Statistics engine: rollup recomputation and the query façade.

Resolution order for a stats query:
1. Result cache (5 minute TTL)
2. Rollup table (order_stats) for the filter's granularity
3. Realtime aggregation over raw rows, bounded by row count and timeout

Both non-cache paths populate the cache before returning. The engine owns
its cache instance; a process normally runs one engine via
``get_stats_service()``.
"""
import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union
from zoneinfo import ZoneInfo

import duckdb

from core.cache import ResultCache, build_cache_key
from core.config import config
from core.exceptions import (
    RecomputeFailureError,
    RowLimitExceededError,
    StatsError,
    StoreUnavailableError,
    ValidationError,
)
from core.models import (
    EvaluationRow,
    Granularity,
    OrderRow,
    Period,
    ResultSource,
    StatsFilter,
    StatsResult,
    StatsRow,
)
from core.observability import Timer, get_logger
from core.periods import closed_period, iter_closed_periods, month_start, query_window, week_start
from core.resilience import RetryConfig, retry_with_backoff
from core.rollup import build_stat_records, parse_rows, realtime_rows, round_score
from core.store import StatsStore, get_store

logger = get_logger(__name__)

# Cache families; keys are "<family>:<md5>"
STATS_FAMILY = "stats"
CHART_FAMILY = "chart"
HOT_QUERIES_FAMILY = "hot_queries"

REALTIME_FAMILIES = (STATS_FAMILY, CHART_FAMILY)
RECOMPUTE_FAMILIES = (STATS_FAMILY, CHART_FAMILY, HOT_QUERIES_FAMILY)

CHART_TYPES = ("orders_trend", "region_distribution", "price_distribution", "status_summary")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StatsService:
    """
    Statistics aggregation and query engine.

    Usage:
        service = StatsService(store)
        await service.start()                      # waits for the store
        result = await service.query({"regionId": 1})
        await service.recompute(Granularity.DAILY, start, end)
    """

    def __init__(
        self,
        store: StatsStore,
        cache: Optional[ResultCache] = None,
        tz: Optional[ZoneInfo] = None,
        now: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.cache = cache or ResultCache(default_ttl=config.cache.default_ttl_seconds)
        self.tz = tz or config.stats.tz
        self._now = now
        self._ready = asyncio.Event()

        self.max_result_days = config.stats.max_result_days
        self.fallback_row_limit = config.stats.fallback_row_limit
        self.hot_queries_ttl = config.cache.hot_queries_ttl_seconds

    # ─── Readiness ────────────────────────────────────────────────────────────

    async def start(self, retry_config: Optional[RetryConfig] = None) -> None:
        """
        Wait for the store with exponential backoff, then mark ready.

        Raises:
            StoreUnavailableError: if the store never came up
        """
        await retry_with_backoff(
            self.store.ping,
            config=retry_config or RetryConfig.from_store_config(config.store),
            retryable_exceptions=(StoreUnavailableError,),
            operation="store readiness",
        )
        self._ready.set()
        logger.info("Stats engine ready")

    async def keep_trying_start(self, retry_config: Optional[RetryConfig] = None) -> None:
        """
        Run ``start()`` rounds until the store answers.

        Between exhausted rounds it sleeps the capped backoff delay; the
        process keeps serving degraded responses in the meantime.
        """
        retry_config = retry_config or RetryConfig.from_store_config(config.store)
        while not self.is_ready:
            try:
                await self.start(retry_config)
            except StoreUnavailableError as e:
                logger.warning(
                    f"Store still unavailable, next readiness round in {retry_config.max_delay}s: {e}"
                )
                await asyncio.sleep(retry_config.max_delay)

    async def wait_ready(self, timeout: Optional[float] = None) -> None:
        """Block until ``start()`` has succeeded."""
        if timeout is None:
            await self._ready.wait()
        else:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def _require_ready(self) -> None:
        if not self.is_ready:
            raise StoreUnavailableError("store unavailable")

    def today(self) -> date:
        return self._now().astimezone(self.tz).date()

    # ═══════════════════════════════════════════════════════════════════════════
    # ROLLUP COMPUTATION
    # ═══════════════════════════════════════════════════════════════════════════

    async def recompute(
        self,
        granularity: Granularity,
        period_start: datetime,
        period_end: datetime,
    ) -> Dict[str, Any]:
        """
        Recompute and upsert every rollup record of one period.

        Idempotent: re-running over unchanged source data writes identical
        records. Malformed source rows are skipped and logged.

        Raises:
            RecomputeFailureError: if the period could not be read or written;
                previously stored records for the period are left untouched
        """
        granularity = Granularity(granularity)
        period = Period(period_start, period_end)

        with Timer(f"recompute_{granularity.value}", logger) as timer:
            try:
                order_rows = await self.store.fetch_orders(period.start_ts, period.end_ts)
                evaluation_rows = await self.store.fetch_evaluations(period.start_ts, period.end_ts)

                orders, skipped_orders = parse_rows(order_rows, OrderRow.from_row)
                evaluations, skipped_evaluations = parse_rows(evaluation_rows, EvaluationRow.from_row)

                records = build_stat_records(granularity, period, orders, evaluations)
                written = await self.store.upsert_stat_records(records)
            except (StatsError, duckdb.Error) as e:
                logger.error(
                    f"Recompute failed for {granularity.value} period {period.start.isoformat()}: {e}",
                    extra={"granularity": granularity.value, "period_start": period.start.isoformat()}
                )
                raise RecomputeFailureError(granularity.value, period.start.isoformat(), str(e)) from e

        for family in RECOMPUTE_FAMILIES:
            self.cache.invalidate(family)

        summary = {
            "granularity": granularity.value,
            "period_start": period.start.isoformat(),
            "period_end": period.end.isoformat(),
            "records": written,
            "orders": len(orders),
            "evaluations": len(evaluations),
            "skipped_rows": skipped_orders + skipped_evaluations,
            "duration_ms": round(timer.elapsed_ms, 2),
        }
        logger.info(f"Recomputed {granularity.value} rollup", extra=summary)
        return summary

    async def recompute_closed_period(
        self,
        granularity: Granularity,
        fired_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Recompute the most recently completed bucket as of ``fired_at`` (default: now)."""
        period = closed_period(Granularity(granularity), fired_at or self._now(), self.tz)
        return await self.recompute(granularity, period.start, period.end)

    async def backfill(self, granularity: Granularity, date_from: date, date_to: date) -> Dict[str, Any]:
        """
        Recompute every closed bucket overlapping a date range.

        Manual re-run for periods left stale by a failed scheduled run. A
        failing period is logged and reported; the remaining ones still run.
        """
        self._require_ready()
        granularity = Granularity(granularity)
        periods = list(iter_closed_periods(granularity, date_from, date_to, self._now(), self.tz))

        records = 0
        failed: List[str] = []
        for period in periods:
            try:
                summary = await self.recompute(granularity, period.start, period.end)
                records += summary["records"]
            except RecomputeFailureError as e:
                failed.append(str(e.period_start))

        return {
            "granularity": granularity.value,
            "periods": len(periods),
            "records": records,
            "failed": failed,
        }

    # ═══════════════════════════════════════════════════════════════════════════
    # QUERY FAÇADE
    # ═══════════════════════════════════════════════════════════════════════════

    async def query(self, params: Union[StatsFilter, Dict[str, Any], None] = None) -> Dict[str, Any]:
        """
        Answer a statistics query for external callers.

        Returns:
            ``{"data": [...], "fromCache": bool, "source": str}`` or
            ``{"error": message}``; never raises for bad input or store failures.
        """
        if not self.is_ready:
            return {"error": "store unavailable"}

        try:
            stats_filter = params if isinstance(params, StatsFilter) else StatsFilter.from_params(params)
            result = await self.get_stats(stats_filter)
        except ValidationError as e:
            logger.info(f"Rejected stats query: {e}")
            return {"error": str(e)}
        except (StatsError, duckdb.Error) as e:
            logger.error(f"Stats query failed: {e}", exc_info=True)
            return {"error": str(e)}
        return result.to_dict()

    async def get_stats(self, stats_filter: StatsFilter) -> StatsResult:
        """
        Resolve a filter through cache, rollups, then raw rows.

        Raises:
            StatsError: store failures, timeouts, row limit exceeded
        """
        key = stats_filter.cache_key(STATS_FAMILY)

        cached = self.cache.get(key)
        if cached is not None:
            return StatsResult(rows=cached.rows, from_cache=True, source=ResultSource.CACHE)

        date_from, date_to = self._resolve_dates(stats_filter)

        rows = await self._read_rollups(stats_filter, date_from, date_to)
        source = ResultSource.ROLLUP
        if not rows:
            rows = await self._read_realtime(stats_filter, date_from, date_to)
            source = ResultSource.REALTIME

        result = StatsResult(rows=rows, from_cache=False, source=source)
        self.cache.set(key, result)
        return result

    def _resolve_dates(self, stats_filter: StatsFilter):
        """Fill missing bounds: dateTo defaults to today, dateFrom to the 30-day window."""
        date_to = stats_filter.date_to or self.today()
        date_from = stats_filter.date_from or date_to - timedelta(days=self.max_result_days - 1)
        if date_from > date_to:
            raise ValidationError("dateFrom", f"must not be after dateTo ({date_to.isoformat()})", date_from.isoformat())
        return date_from, date_to

    async def _read_rollups(self, stats_filter: StatsFilter, date_from: date, date_to: date) -> List[StatsRow]:
        rows = await self.store.fetch_rollup_rows(
            stats_filter.granularity,
            date_from,
            date_to,
            stats_filter.dimensions,
            self.max_result_days,
        )
        return [
            StatsRow(
                stat_date=row[0],
                total_orders=int(row[1] or 0),
                confirmed_orders=int(row[2] or 0),
                completed_orders=int(row[3] or 0),
                cancelled_orders=int(row[4] or 0),
                avg_user_score=round_score(row[5]),
                avg_merchant_score=round_score(row[6]),
                evaluation_count=int(row[7] or 0),
            )
            for row in rows
        ]

    async def _read_realtime(self, stats_filter: StatsFilter, date_from: date, date_to: date) -> List[StatsRow]:
        """
        Aggregate raw rows for the query window with the rollup grouping rules.

        Raises:
            RowLimitExceededError: if either table has more rows in the window than allowed
            QueryTimeoutError: if a scan exceeds the store timeout
        """
        window = query_window(stats_filter.granularity, date_from, date_to, self.tz)
        if window is None:
            return []

        limit = self.fallback_row_limit
        with Timer("realtime_fallback", logger):
            order_rows = await self.store.fetch_orders(window.start_ts, window.end_ts, limit=limit + 1)
            if len(order_rows) > limit:
                raise RowLimitExceededError(limit, "orders")
            evaluation_rows = await self.store.fetch_evaluations(window.start_ts, window.end_ts, limit=limit + 1)
            if len(evaluation_rows) > limit:
                raise RowLimitExceededError(limit, "evaluations")

            orders, _ = parse_rows(order_rows, OrderRow.from_row)
            evaluations, _ = parse_rows(evaluation_rows, EvaluationRow.from_row)

        logger.debug(
            "Served stats from raw rows",
            extra={"orders": len(orders), "evaluations": len(evaluations)}
        )
        return realtime_rows(stats_filter, orders, evaluations, self.tz, self.max_result_days)

    # ═══════════════════════════════════════════════════════════════════════════
    # HOT QUERIES, CHARTS, RANKINGS
    # ═══════════════════════════════════════════════════════════════════════════

    async def get_hot_queries(self) -> Dict[str, Any]:
        """
        Today/week/month summaries plus top regions and merchants.

        Cached as one unit for 30 minutes; the parts are never cached
        separately under this family.
        """
        self._require_ready()
        today = self.today()
        key = build_cache_key(HOT_QUERIES_FAMILY, {"date": today.isoformat()})

        cached = self.cache.get(key)
        if cached is not None:
            return {**cached, "fromCache": True}

        week_from = week_start(today)
        month_from = month_start(today)

        result = {
            "date": today.isoformat(),
            "today": await self._summary(StatsFilter(today, today, granularity=Granularity.DAILY), today),
            "week": await self._summary(StatsFilter(week_from, today, granularity=Granularity.WEEKLY), week_from),
            "month": await self._summary(StatsFilter(month_from, today, granularity=Granularity.MONTHLY), month_from),
            "topRegions": await self.get_top_regions(),
            "topMerchants": await self.get_top_merchants(),
        }
        self.cache.set(key, result, ttl=self.hot_queries_ttl)
        return {**result, "fromCache": False}

    async def _summary(self, stats_filter: StatsFilter, stat_date: date) -> Dict[str, Any]:
        result = await self.get_stats(stats_filter)
        row = result.rows[0] if result.rows else StatsRow(stat_date=stat_date)
        return row.to_dict()

    async def get_top_regions(self, days: Optional[int] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Regions by order volume over the last ``days`` days."""
        days = days or config.stats.top_regions_days
        since = self.today() - timedelta(days=days - 1)
        return await self.store.get_top_regions(since, limit or config.stats.top_limit)

    async def get_top_merchants(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self.store.get_merchant_rankings(limit=limit or config.stats.top_limit)

    async def get_merchant_rankings(
        self,
        region_id: Optional[int] = None,
        price_range: Optional[str] = None,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        self._require_ready()
        return await self.store.get_merchant_rankings(region_id, price_range, limit)

    async def get_evaluation_summary(self, date_from: date, date_to: date) -> Dict[str, Any]:
        self._require_ready()
        return await self.store.get_evaluation_summary(date_from, date_to)

    async def get_chart_data(self, chart_type: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Chart series for dashboards, cached under the ``chart`` family.

        Raises:
            ValidationError: unknown chart type or invalid filter
            StoreUnavailableError: before the engine is ready
        """
        self._require_ready()
        if chart_type not in CHART_TYPES:
            raise ValidationError("chartType", f"must be one of {list(CHART_TYPES)}", chart_type)

        stats_filter = StatsFilter.from_params(params)
        key = build_cache_key(CHART_FAMILY, {"chartType": chart_type, **stats_filter.canonical()})

        cached = self.cache.get(key)
        if cached is not None:
            return {**cached, "fromCache": True}

        date_from, date_to = self._resolve_dates(stats_filter)

        if chart_type == "orders_trend":
            result = await self.get_stats(stats_filter)
            series = [row.to_dict() for row in sorted(result.rows, key=lambda r: r.stat_date)]
        elif chart_type == "region_distribution":
            series = await self.store.get_region_distribution(date_from, date_to)
        elif chart_type == "price_distribution":
            series = await self.store.get_price_distribution(date_from, date_to)
        else:
            series = await self.store.get_status_summary(date_from, date_to)

        chart = {
            "chartType": chart_type,
            "startDate": date_from.isoformat(),
            "endDate": date_to.isoformat(),
            "data": series,
        }
        self.cache.set(key, chart)
        return {**chart, "fromCache": False}

    # ─── Cache administration ─────────────────────────────────────────────────

    def invalidate_realtime(self) -> int:
        """Drop stats and chart results so near-real-time views refresh."""
        return sum(self.cache.invalidate(family) for family in REALTIME_FAMILIES)

    def evict_expired(self) -> int:
        """Drop expired entries of every family, including ones never read again."""
        return self.cache.cleanup_expired()

    def invalidate(self, pattern: Optional[str] = None) -> int:
        return self.cache.invalidate(pattern)

    def get_cache_stats(self) -> Dict[str, Any]:
        return self.cache.get_stats()


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_stats_service: Optional[StatsService] = None


async def get_stats_service() -> StatsService:
    """Get singleton stats service instance."""
    global _stats_service
    if _stats_service is None:
        store = await get_store()
        _stats_service = StatsService(store)
    return _stats_service


def reset_stats_service() -> None:
    """Forget the singleton (tests, shutdown)."""
    global _stats_service
    _stats_service = None
