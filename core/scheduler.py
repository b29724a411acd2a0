"""
Background job scheduler using APScheduler.

Manages the statistics background tasks:
- Realtime cache invalidation (every 5 minutes)
- Hourly rollup (top of every hour)
- Daily rollup (2 AM)
- Weekly rollup (Monday 3 AM)
- Monthly rollup (1st of month 4 AM)

Features:
- Every job is guarded: a failure is logged and recorded, never propagated
- Job execution history
- Prevents job pile-up (max_instances=1, coalesce)
- Jobs are registered only after the stats engine reports ready
- Graceful shutdown
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.events import EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.config import SchedulerConfig, config
from core.models import Granularity
from core.observability import Timer, correlation_context, get_logger
from core.stats_service import StatsService

logger = get_logger(__name__)


class JobStatus(Enum):
    """Job execution status."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    MISSED = "missed"


@dataclass
class JobExecution:
    """Record of a job execution."""
    job_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    status: JobStatus = JobStatus.RUNNING
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


@dataclass
class JobInfo:
    """Information about a scheduled job."""
    id: str
    name: str
    description: str
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_status: Optional[JobStatus] = None
    last_duration_ms: Optional[float] = None
    run_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None


class StatsScheduler:
    """
    Statistics job scheduler with monitoring.

    Usage:
        scheduler = StatsScheduler(service)
        await scheduler.start()   # waits for service readiness

        # Later...
        scheduler.shutdown()
    """

    def __init__(self, service: StatsService, scheduler_config: Optional[SchedulerConfig] = None):
        self.service = service
        self.config = scheduler_config or config.scheduler
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._job_history: Dict[str, List[JobExecution]] = {}
        self._job_info: Dict[str, JobInfo] = {}
        self._job_funcs: Dict[str, Callable[[], Awaitable[Any]]] = {}
        self._max_history = self.config.max_history
        self._started = False

    async def start(self) -> None:
        """Wait for the engine to be ready, then register jobs and start."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        await self.service.wait_ready()

        self._scheduler = AsyncIOScheduler(timezone=self.service.tz)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        self._register_jobs()

        self._scheduler.start()
        self._started = True
        self._refresh_next_runs()
        logger.info("Stats scheduler started")

    def _register_jobs(self) -> None:
        """Register all background jobs."""
        cfg = self.config

        self._add_job(
            job_id="cache_invalidation",
            name="Cache Invalidation",
            description="Drop cached stats and chart results and evict expired entries",
            func=self._run_cache_invalidation,
            trigger=IntervalTrigger(minutes=cfg.invalidation_interval_minutes),
        )

        self._add_job(
            job_id="hourly_rollup",
            name="Hourly Rollup",
            description="Recompute the previous hour",
            func=self._rollup_job(Granularity.HOURLY),
            trigger=CronTrigger(minute=0),
        )

        self._add_job(
            job_id="daily_rollup",
            name="Daily Rollup",
            description="Recompute the previous day",
            func=self._rollup_job(Granularity.DAILY),
            trigger=CronTrigger(hour=cfg.daily_hour, minute=0),
        )

        self._add_job(
            job_id="weekly_rollup",
            name="Weekly Rollup",
            description="Recompute the previous Monday-Sunday week",
            func=self._rollup_job(Granularity.WEEKLY),
            trigger=CronTrigger(day_of_week=cfg.weekly_day_of_week, hour=cfg.weekly_hour, minute=0),
        )

        self._add_job(
            job_id="monthly_rollup",
            name="Monthly Rollup",
            description="Recompute the previous calendar month",
            func=self._rollup_job(Granularity.MONTHLY),
            trigger=CronTrigger(day=cfg.monthly_day, hour=cfg.monthly_hour, minute=0),
        )

        logger.info(f"Registered {len(self._job_info)} stats jobs")

    def _add_job(
        self,
        job_id: str,
        name: str,
        description: str,
        func: Callable[[], Awaitable[Any]],
        trigger,
        max_instances: int = 1,
        coalesce: bool = True,
    ) -> None:
        """Add a guarded job to the scheduler."""
        self._job_funcs[job_id] = func
        self._scheduler.add_job(
            self._guarded,
            trigger=trigger,
            args=[job_id],
            id=job_id,
            name=name,
            max_instances=max_instances,
            coalesce=coalesce,
            replace_existing=True,
        )

        self._job_info[job_id] = JobInfo(
            id=job_id,
            name=name,
            description=description,
        )
        self._job_history[job_id] = []

    # ═══════════════════════════════════════════════════════════════════════════
    # JOB IMPLEMENTATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def _guarded(self, job_id: str) -> Optional[Any]:
        """
        Run one job invocation.

        Never raises: the error is logged and stored in the job history,
        and the other jobs keep their schedule.
        """
        func = self._job_funcs[job_id]
        info = self._job_info[job_id]
        execution = JobExecution(job_id=job_id, started_at=datetime.now(self.service.tz))

        with correlation_context():
            timer = Timer(job_id, logger)
            try:
                with timer:
                    result = await func()
                execution.status = JobStatus.SUCCESS
                execution.result = result
            except Exception as e:
                result = None
                execution.status = JobStatus.FAILED
                execution.error = str(e)
                info.error_count += 1
                info.last_error = execution.error
                logger.error(
                    f"Job {job_id} failed: {e}",
                    exc_info=True,
                    extra={"job_id": job_id, "error": execution.error}
                )

        execution.finished_at = datetime.now(self.service.tz)
        execution.duration_ms = round(timer.elapsed_ms, 2)

        info.last_run = execution.started_at
        info.last_status = execution.status
        info.last_duration_ms = execution.duration_ms
        info.run_count += 1
        self._add_execution(job_id, execution)
        self._refresh_next_runs()
        return result

    async def _run_cache_invalidation(self) -> Dict[str, Any]:
        removed = self.service.invalidate_realtime()
        evicted = self.service.evict_expired()
        logger.debug(f"Invalidated {removed} realtime cache entries, evicted {evicted} expired")
        return {"invalidated": removed, "evicted": evicted}

    def _rollup_job(self, granularity: Granularity) -> Callable[[], Awaitable[Dict[str, Any]]]:
        async def run() -> Dict[str, Any]:
            logger.info(f"Starting {granularity.value} rollup job")
            return await self.service.recompute_closed_period(granularity)
        return run

    # ═══════════════════════════════════════════════════════════════════════════
    # EVENT HANDLERS
    # ═══════════════════════════════════════════════════════════════════════════

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        """Handle missed job execution."""
        job_id = event.job_id
        if job_id not in self._job_info:
            return

        now = datetime.now(self.service.tz)
        self._job_info[job_id].last_status = JobStatus.MISSED
        self._add_execution(job_id, JobExecution(
            job_id=job_id,
            started_at=now,
            finished_at=now,
            status=JobStatus.MISSED,
        ))

        logger.warning(
            f"Job {job_id} missed scheduled execution",
            extra={"job_id": job_id}
        )

    def _add_execution(self, job_id: str, execution: JobExecution) -> None:
        """Add execution to history, keeping only last N."""
        history = self._job_history.setdefault(job_id, [])
        history.append(execution)

        if len(history) > self._max_history:
            self._job_history[job_id] = history[-self._max_history:]

    def _refresh_next_runs(self) -> None:
        if not self._scheduler:
            return
        for job_id, info in self._job_info.items():
            job = self._scheduler.get_job(job_id)
            if job is not None:
                info.next_run = job.next_run_time

    # ═══════════════════════════════════════════════════════════════════════════
    # PUBLIC API
    # ═══════════════════════════════════════════════════════════════════════════

    def get_jobs(self) -> List[Dict[str, Any]]:
        """Get list of all jobs with their status."""
        jobs = []
        for job_id, info in self._job_info.items():
            job = self._scheduler.get_job(job_id) if self._scheduler else None
            jobs.append({
                "id": info.id,
                "name": info.name,
                "description": info.description,
                "trigger": str(job.trigger) if job else "",
                "next_run": info.next_run.isoformat() if info.next_run else None,
                "last_run": info.last_run.isoformat() if info.last_run else None,
                "last_status": info.last_status.value if info.last_status else None,
                "last_duration_ms": info.last_duration_ms,
                "run_count": info.run_count,
                "error_count": info.error_count,
                "last_error": info.last_error,
            })
        return jobs

    def get_job_history(self, job_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Get execution history for a job, newest first."""
        history = self._job_history.get(job_id, [])[-limit:]
        return [{
            "started_at": e.started_at.isoformat() if e.started_at else None,
            "finished_at": e.finished_at.isoformat() if e.finished_at else None,
            "status": e.status.value,
            "duration_ms": e.duration_ms,
            "error": e.error,
        } for e in reversed(history)]

    async def run_job_now(self, job_id: str) -> Dict[str, Any]:
        """Run a job immediately in the caller's task, with the same guard."""
        if job_id not in self._job_info:
            raise ValueError(f"Unknown job: {job_id}")

        logger.info(f"Manually running job: {job_id}")
        result = await self._guarded(job_id)
        return {
            "job_id": job_id,
            "status": self._job_info[job_id].last_status.value,
            "result": result,
        }

    def shutdown(self, wait: bool = True) -> None:
        """Shutdown the scheduler."""
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=wait)
            self._started = False
            logger.info("Stats scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and self._scheduler is not None
