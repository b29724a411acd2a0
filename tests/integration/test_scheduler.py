"""
Integration tests for core/scheduler.py

Runs a real AsyncIOScheduler against a mocked stats engine.
"""
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

from core.config import SchedulerConfig
from core.exceptions import RecomputeFailureError
from core.models import Granularity
from core.scheduler import StatsScheduler

JOB_IDS = {"cache_invalidation", "hourly_rollup", "daily_rollup", "weekly_rollup", "monthly_rollup"}


@pytest.fixture
def engine():
    service = MagicMock()
    service.tz = ZoneInfo("UTC")
    service.wait_ready = AsyncMock()
    service.invalidate_realtime = MagicMock(return_value=3)
    service.evict_expired = MagicMock(return_value=1)
    service.recompute_closed_period = AsyncMock(return_value={"records": 2})
    return service


@pytest_asyncio.fixture
async def scheduler(engine):
    stats_scheduler = StatsScheduler(engine, SchedulerConfig(enabled=True, max_history=2))
    await stats_scheduler.start()
    yield stats_scheduler
    stats_scheduler.shutdown(wait=False)


class TestStart:

    @pytest.mark.asyncio
    async def test_registers_jobs(self, scheduler):
        jobs = {job["id"]: job for job in scheduler.get_jobs()}

        assert set(jobs) == JOB_IDS
        assert scheduler.is_running
        assert all(job["next_run"] for job in jobs.values())
        assert "minute='0'" in jobs["hourly_rollup"]["trigger"]
        assert "hour='2'" in jobs["daily_rollup"]["trigger"]
        assert "day_of_week='mon'" in jobs["weekly_rollup"]["trigger"]
        assert "day='1'" in jobs["monthly_rollup"]["trigger"]

    @pytest.mark.asyncio
    async def test_waits_for_readiness_before_registering(self, engine):
        stats_scheduler = StatsScheduler(engine, SchedulerConfig(enabled=True))

        async def check_nothing_registered():
            assert stats_scheduler.get_jobs() == []

        engine.wait_ready.side_effect = check_nothing_registered
        await stats_scheduler.start()
        try:
            engine.wait_ready.assert_awaited_once()
            assert len(stats_scheduler.get_jobs()) == 5
        finally:
            stats_scheduler.shutdown(wait=False)

    @pytest.mark.asyncio
    async def test_second_start_is_noop(self, scheduler):
        await scheduler.start()
        assert len(scheduler.get_jobs()) == 5

    @pytest.mark.asyncio
    async def test_shutdown(self, engine):
        stats_scheduler = StatsScheduler(engine, SchedulerConfig(enabled=True))
        await stats_scheduler.start()

        stats_scheduler.shutdown(wait=False)

        assert not stats_scheduler.is_running


class TestJobs:

    @pytest.mark.asyncio
    async def test_rollup_job(self, scheduler, engine):
        result = await scheduler.run_job_now("daily_rollup")

        engine.recompute_closed_period.assert_awaited_once_with(Granularity.DAILY)
        assert result == {"job_id": "daily_rollup", "status": "success", "result": {"records": 2}}

    @pytest.mark.asyncio
    async def test_cache_invalidation_job(self, scheduler, engine):
        result = await scheduler.run_job_now("cache_invalidation")

        engine.invalidate_realtime.assert_called_once()
        engine.evict_expired.assert_called_once()
        assert result["result"] == {"invalidated": 3, "evicted": 1}

    @pytest.mark.asyncio
    async def test_failure_is_recorded_not_raised(self, scheduler, engine):
        engine.recompute_closed_period.side_effect = RecomputeFailureError("weekly", "2025-06-02")

        result = await scheduler.run_job_now("weekly_rollup")

        assert result["status"] == "failed"
        assert result["result"] is None
        job = next(j for j in scheduler.get_jobs() if j["id"] == "weekly_rollup")
        assert job["error_count"] == 1
        assert "weekly" in job["last_error"]

        # Other jobs keep working
        assert (await scheduler.run_job_now("cache_invalidation"))["status"] == "success"

    @pytest.mark.asyncio
    async def test_history_newest_first_and_bounded(self, scheduler, engine):
        await scheduler.run_job_now("hourly_rollup")
        engine.recompute_closed_period.side_effect = RecomputeFailureError("hourly", "2025-06-12T11:00")
        await scheduler.run_job_now("hourly_rollup")
        await scheduler.run_job_now("hourly_rollup")

        history = scheduler.get_job_history("hourly_rollup")

        assert len(history) == 2
        assert [h["status"] for h in history] == ["failed", "failed"]
        job = next(j for j in scheduler.get_jobs() if j["id"] == "hourly_rollup")
        assert job["run_count"] == 3

    @pytest.mark.asyncio
    async def test_unknown_job(self, scheduler):
        with pytest.raises(ValueError):
            await scheduler.run_job_now("nightly_reindex")
