"""
Integration tests for core/stats_service.py

Recompute, query resolution (cache -> rollup -> realtime), hot queries and charts
against a seeded DuckDB store.
"""
import asyncio
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.exceptions import QueryTimeoutError, RecomputeFailureError, StoreUnavailableError, ValidationError
from core.models import Granularity, StatsFilter
from core.resilience import RetryConfig
from core.stats_service import StatsService


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


JUNE_10 = (utc(2025, 6, 10), utc(2025, 6, 11))
JUNE_11 = (utc(2025, 6, 11), utc(2025, 6, 12))

FAST_RETRY = RetryConfig(max_attempts=2, base_delay=0.001, max_delay=0.001, jitter=0)


class TestReadiness:

    @pytest.mark.asyncio
    async def test_ready_after_start(self, service):
        assert service.is_ready
        await service.wait_ready(timeout=1)

    @pytest.mark.asyncio
    async def test_retries_until_store_answers(self):
        store = MagicMock()
        store.ping = AsyncMock(side_effect=[StoreUnavailableError("locked"), None])
        service = StatsService(store)

        await service.start(FAST_RETRY)

        assert service.is_ready
        assert store.ping.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        store = MagicMock()
        store.ping = AsyncMock(side_effect=StoreUnavailableError("down"))
        service = StatsService(store)

        with pytest.raises(StoreUnavailableError):
            await service.start(FAST_RETRY)
        assert not service.is_ready

        with pytest.raises(asyncio.TimeoutError):
            await service.wait_ready(timeout=0.01)

    @pytest.mark.asyncio
    async def test_keeps_trying_after_exhausted_rounds(self):
        store = MagicMock()
        store.ping = AsyncMock(side_effect=[
            StoreUnavailableError("locked"),
            StoreUnavailableError("locked"),
            StoreUnavailableError("locked"),
            None,
        ])
        service = StatsService(store)

        await asyncio.wait_for(service.keep_trying_start(FAST_RETRY), timeout=5)

        assert service.is_ready
        assert store.ping.await_count == 4

    @pytest.mark.asyncio
    async def test_degraded_answers_until_ready(self):
        store = MagicMock()
        store.ping = AsyncMock(side_effect=StoreUnavailableError("down"))
        service = StatsService(store)

        assert await service.query({"regionId": 1}) == {"error": "store unavailable"}
        with pytest.raises(StoreUnavailableError):
            await service.get_hot_queries()
        with pytest.raises(StoreUnavailableError):
            await service.get_chart_data("status_summary")
        store.fetch_rollup_rows.assert_not_called()


class TestRecompute:

    @pytest.mark.asyncio
    async def test_single_region_day(self, service):
        """3 orders in region 1 on 2025-06-10: detail row plus identical total row."""
        summary = await service.recompute(Granularity.DAILY, *JUNE_10)

        assert summary["records"] == 2
        assert summary["orders"] == 3
        assert summary["evaluations"] == 3
        assert summary["skipped_rows"] == 0

        records = await service.store.get_stat_records(Granularity.DAILY, JUNE_10[0])
        detail = next(r for r in records if not r.is_total)
        total = next(r for r in records if r.is_total)

        assert detail.stat_date == date(2025, 6, 10)
        assert detail.region_id == 1
        assert total.region_id is None
        for record in (detail, total):
            assert record.total_orders == 3
            assert record.completed_orders == 2
            assert record.cancelled_orders == 1
            assert record.avg_user_score == 8.0
            assert record.avg_merchant_score == 8.0
            assert record.evaluation_count == 3

    @pytest.mark.asyncio
    async def test_idempotent(self, service):
        await service.recompute(Granularity.DAILY, *JUNE_10)
        first = await service.store.get_stat_records(Granularity.DAILY, JUNE_10[0])

        await service.recompute(Granularity.DAILY, *JUNE_10)
        second = await service.store.get_stat_records(Granularity.DAILY, JUNE_10[0])

        assert first == second

    @pytest.mark.asyncio
    async def test_skips_malformed_rows(self, service):
        await service.store.load_rows("orders", [
            {"id": 50, "region_id": 1, "price_range": "0-500", "merchant_id": 10,
             "status": None, "created_at": int(utc(2025, 6, 10, 15).timestamp())},
        ])

        summary = await service.recompute(Granularity.DAILY, *JUNE_10)

        assert summary["skipped_rows"] == 1
        assert summary["orders"] == 3

    @pytest.mark.asyncio
    async def test_invalidates_cache_families(self, service):
        for key in ("stats:a", "chart:b", "hot_queries:c", "rankings:d"):
            service.cache.set(key, "value")

        await service.recompute(Granularity.DAILY, *JUNE_10)

        assert service.cache.get("stats:a") is None
        assert service.cache.get("chart:b") is None
        assert service.cache.get("hot_queries:c") is None
        assert service.cache.get("rankings:d") == "value"

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_records(self, service):
        await service.recompute(Granularity.DAILY, *JUNE_10)
        service.cache.set("stats:a", "value")

        real_fetch = service.store.fetch_evaluations
        service.store.fetch_evaluations = AsyncMock(side_effect=QueryTimeoutError("SELECT", 30))
        try:
            with pytest.raises(RecomputeFailureError) as exc_info:
                await service.recompute(Granularity.DAILY, *JUNE_10)
        finally:
            service.store.fetch_evaluations = real_fetch

        assert exc_info.value.granularity == "daily"
        records = await service.store.get_stat_records(Granularity.DAILY, JUNE_10[0])
        assert len(records) == 2
        assert service.cache.get("stats:a") == "value"

    @pytest.mark.asyncio
    async def test_closed_period_from_fire_time(self, service):
        summary = await service.recompute_closed_period(Granularity.DAILY, utc(2025, 6, 11, 2))

        assert summary["period_start"] == "2025-06-10T00:00:00+00:00"
        assert summary["period_end"] == "2025-06-11T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_closed_period_defaults_to_now(self, service):
        summary = await service.recompute_closed_period(Granularity.HOURLY)
        assert summary["period_start"] == "2025-06-12T11:00:00+00:00"

    @pytest.mark.asyncio
    async def test_backfill_closed_days_only(self, service):
        result = await service.backfill(Granularity.DAILY, date(2025, 6, 9), date(2025, 6, 12))

        # June 12 is still open at 12:00
        assert result["periods"] == 3
        assert result["records"] == 1 + 2 + 2
        assert result["failed"] == []


class TestQuery:

    @pytest.mark.asyncio
    async def test_rollup_then_cache(self, service):
        await service.backfill(Granularity.DAILY, date(2025, 6, 10), date(2025, 6, 11))
        params = {"dateFrom": "2025-06-10", "dateTo": "2025-06-11"}

        first = await service.query(params)
        second = await service.query(params)

        assert first["source"] == "rollup"
        assert first["fromCache"] is False
        assert [row["statDate"] for row in first["data"]] == ["2025-06-11", "2025-06-10"]
        assert first["data"][1]["totalOrders"] == 3
        assert first["data"][0]["confirmedOrders"] == 1

        assert second["fromCache"] is True
        assert second["data"] == first["data"]

    @pytest.mark.asyncio
    async def test_dimension_filter_reads_detail_rows(self, service):
        await service.backfill(Granularity.DAILY, date(2025, 6, 10), date(2025, 6, 11))

        result = await service.query({"dateFrom": "2025-06-10", "dateTo": "2025-06-11", "regionId": 1})

        assert result["source"] == "rollup"
        assert len(result["data"]) == 1
        row = result["data"][0]
        assert row["statDate"] == "2025-06-10"
        assert (row["totalOrders"], row["completedOrders"], row["cancelledOrders"]) == (3, 2, 1)

    @pytest.mark.asyncio
    async def test_region_rows_add_up_to_total(self, service):
        """Orders without a region reach the total but no region row."""
        await service.store.load_rows("orders", [
            {"id": 5, "merchant_id": 12, "region_id": None, "price_range": "0-500", "actual_price": 200,
             "status": "completed", "created_at": int(utc(2025, 6, 11, 9).timestamp())},
        ])
        await service.backfill(Granularity.DAILY, date(2025, 6, 10), date(2025, 6, 11))
        window = {"dateFrom": "2025-06-10", "dateTo": "2025-06-11"}

        total = await service.query(window)
        by_region = [await service.query({**window, "regionId": r}) for r in (1, 2)]

        total_orders = sum(row["totalOrders"] for row in total["data"])
        region_orders = sum(row["totalOrders"] for result in by_region for row in result["data"])
        assert total_orders == 5
        assert region_orders == 4
        assert total_orders - region_orders == 1

    @pytest.mark.asyncio
    async def test_realtime_fallback_matches_rollup(self, service):
        params = {"dateFrom": "2025-06-10", "dateTo": "2025-06-11"}

        realtime = await service.query(params)
        assert realtime["source"] == "realtime"

        await service.backfill(Granularity.DAILY, date(2025, 6, 10), date(2025, 6, 11))
        rollup = await service.query(params)

        assert rollup["source"] == "rollup"
        assert rollup["data"] == realtime["data"]

    @pytest.mark.asyncio
    async def test_realtime_fallback_with_filter_matches_rollup(self, service):
        params = {"dateFrom": "2025-06-10", "dateTo": "2025-06-11", "merchantId": 10}

        realtime = await service.query(params)
        await service.backfill(Granularity.DAILY, date(2025, 6, 10), date(2025, 6, 11))
        rollup = await service.query(params)

        assert (realtime["source"], rollup["source"]) == ("realtime", "rollup")
        assert rollup["data"] == realtime["data"]
        assert rollup["data"][0]["avgUserScore"] == 8.0

    @pytest.mark.asyncio
    async def test_expired_entry_recomputed(self, service, clock):
        params = {"dateFrom": "2025-06-10", "dateTo": "2025-06-10"}
        await service.query(params)

        clock.advance(6 * 60)
        result = await service.query(params)

        assert result["fromCache"] is False
        assert result["source"] == "realtime"

    @pytest.mark.asyncio
    async def test_missing_bounds_default_to_last_30_days(self, service):
        result = await service.query({})

        assert [row["statDate"] for row in result["data"]] == ["2025-06-11", "2025-06-10"]

    @pytest.mark.asyncio
    async def test_weekly_query(self, service):
        result = await service.query({"dateFrom": "2025-06-09", "dateTo": "2025-06-15", "statType": "weekly"})

        assert len(result["data"]) == 1
        assert result["data"][0]["statDate"] == "2025-06-09"
        assert result["data"][0]["totalOrders"] == 4

    @pytest.mark.asyncio
    async def test_accepts_filter_object(self, service):
        result = await service.query(StatsFilter(date_from=date(2025, 6, 11), date_to=date(2025, 6, 11)))
        assert result["data"][0]["totalOrders"] == 1

    @pytest.mark.asyncio
    async def test_invalid_filter_returns_error(self, service):
        result = await service.query({"dateFrom": "2025-06-11", "dateTo": "2025-06-01"})
        assert "dateFrom" in result["error"]

    @pytest.mark.asyncio
    async def test_store_failure_returns_error(self, service):
        service.store.fetch_rollup_rows = AsyncMock(side_effect=StoreUnavailableError("DuckDB store is closed"))

        result = await service.query({"regionId": 1})

        assert result == {"error": "DuckDB store is closed"}

    @pytest.mark.asyncio
    async def test_row_limit_returns_error(self, service):
        service.fallback_row_limit = 2

        result = await service.query({"dateFrom": "2025-06-10", "dateTo": "2025-06-11"})

        assert "Row limit of 2 exceeded" in result["error"]
        assert len(service.cache) == 0


class TestHotQueries:

    @pytest.mark.asyncio
    async def test_bundle(self, service):
        hot = await service.get_hot_queries()

        assert hot["date"] == "2025-06-12"
        assert hot["fromCache"] is False
        assert hot["today"]["statDate"] == "2025-06-12"
        assert hot["today"]["totalOrders"] == 0
        assert hot["week"]["statDate"] == "2025-06-09"
        assert hot["week"]["totalOrders"] == 4
        assert hot["week"]["avgUserScore"] == 8.67
        assert hot["month"]["statDate"] == "2025-06-01"
        assert hot["month"]["totalOrders"] == 4
        assert [r["regionId"] for r in hot["topRegions"]] == [1, 2]
        assert [m["merchantId"] for m in hot["topMerchants"]] == [11, 10]

    @pytest.mark.asyncio
    async def test_cached_for_30_minutes(self, service, clock):
        await service.get_hot_queries()

        clock.advance(20 * 60)
        assert (await service.get_hot_queries())["fromCache"] is True

        clock.advance(11 * 60)
        assert (await service.get_hot_queries())["fromCache"] is False

    @pytest.mark.asyncio
    async def test_survives_realtime_invalidation(self, service):
        await service.get_hot_queries()

        service.invalidate_realtime()

        assert (await service.get_hot_queries())["fromCache"] is True


class TestChartsAndRankings:

    @pytest.mark.asyncio
    async def test_orders_trend_ascending(self, service):
        chart = await service.get_chart_data("orders_trend", {"dateFrom": "2025-06-10", "dateTo": "2025-06-11"})

        assert chart["chartType"] == "orders_trend"
        assert [p["statDate"] for p in chart["data"]] == ["2025-06-10", "2025-06-11"]

    @pytest.mark.asyncio
    async def test_region_distribution_cached(self, service):
        params = {"dateFrom": "2025-06-10", "dateTo": "2025-06-11"}

        first = await service.get_chart_data("region_distribution", params)
        second = await service.get_chart_data("region_distribution", params)

        assert first["data"][0]["count"] == 3
        assert second["fromCache"] is True
        assert service.invalidate_realtime() == 1

    @pytest.mark.asyncio
    async def test_unknown_chart(self, service):
        with pytest.raises(ValidationError):
            await service.get_chart_data("pie", {})

    @pytest.mark.asyncio
    async def test_rankings_and_summary(self, service):
        rankings = await service.get_merchant_rankings(price_range="0-500")
        summary = await service.get_evaluation_summary(date(2025, 6, 10), date(2025, 6, 10))

        assert [m["merchantId"] for m in rankings] == [10]
        assert summary["userEvaluations"] == 2
        assert summary["avgUserScore"] == 8.0

    @pytest.mark.asyncio
    async def test_cache_stats(self, service):
        await service.query({"dateFrom": "2025-06-10", "dateTo": "2025-06-10"})
        stats = service.get_cache_stats()
        assert stats["entries"] == 1
        assert stats["sets"] == 1
