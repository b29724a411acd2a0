"""
Pytest configuration and shared fixtures.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

from core.cache import ResultCache
from core.stats_service import StatsService
from core.store import StatsStore

UTC = ZoneInfo("UTC")


def ts(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> int:
    """Epoch seconds of a UTC wall-clock time."""
    return int(datetime(year, month, day, hour, minute, tzinfo=timezone.utc).timestamp())


class FakeClock:
    """Manually advanced clock for cache expiry tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> ResultCache:
    return ResultCache(default_ttl=300, clock=clock)


@pytest.fixture
def regions() -> List[Dict[str, Any]]:
    return [
        {"id": 1, "name": "Kyiv"},
        {"id": 2, "name": "Lviv"},
    ]


@pytest.fixture
def merchants() -> List[Dict[str, Any]]:
    return [
        {"id": 10, "user_id": 1010, "teacher_name": "Olena", "region_id": 1, "price1": 300, "price2": 500},
        {"id": 11, "user_id": 1011, "teacher_name": "Taras", "region_id": 2, "price1": 1200, "price2": 1600},
        {"id": 12, "user_id": 1012, "teacher_name": "Iryna", "region_id": 1, "price1": None, "price2": None},
    ]


@pytest.fixture
def orders() -> List[Dict[str, Any]]:
    """Three region-1 orders on 2025-06-10, one region-2 order on 2025-06-11."""
    return [
        {"id": 1, "merchant_id": 10, "region_id": 1, "price_range": "0-500", "actual_price": 400,
         "status": "completed", "created_at": ts(2025, 6, 10, 9)},
        {"id": 2, "merchant_id": 10, "region_id": 1, "price_range": "0-500", "actual_price": 450,
         "status": "completed", "created_at": ts(2025, 6, 10, 13)},
        {"id": 3, "merchant_id": 10, "region_id": 1, "price_range": "0-500", "actual_price": 300,
         "status": "cancelled", "created_at": ts(2025, 6, 10, 18)},
        {"id": 4, "merchant_id": 11, "region_id": 2, "price_range": "1000-2000", "actual_price": 1500,
         "status": "confirmed", "created_at": ts(2025, 6, 11, 10)},
    ]


@pytest.fixture
def evaluations() -> List[Dict[str, Any]]:
    return [
        {"id": 100, "order_id": 1, "evaluator_type": "user", "evaluator_id": 501, "target_id": 10,
         "overall_score": 9, "status": "completed", "created_at": ts(2025, 6, 10, 20)},
        {"id": 101, "order_id": 2, "evaluator_type": "user", "evaluator_id": 502, "target_id": 10,
         "overall_score": 7, "status": "completed", "created_at": ts(2025, 6, 10, 21)},
        {"id": 102, "order_id": 1, "evaluator_type": "merchant", "evaluator_id": 1010, "target_id": 501,
         "overall_score": 8, "status": "completed", "created_at": ts(2025, 6, 10, 22)},
        # Not completed: ignored everywhere
        {"id": 103, "order_id": 3, "evaluator_type": "user", "evaluator_id": 503, "target_id": 10,
         "overall_score": 1, "status": "pending", "created_at": ts(2025, 6, 10, 23)},
        {"id": 104, "order_id": 4, "evaluator_type": "user", "evaluator_id": 504, "target_id": 11,
         "overall_score": 10, "status": "completed", "created_at": ts(2025, 6, 11, 15)},
    ]


@pytest_asyncio.fixture
async def store(tmp_path):
    """Empty DuckDB store in a temporary file."""
    stats_store = StatsStore(tmp_path / "stats.duckdb", tz=UTC, query_timeout=10.0)
    await stats_store.connect()
    yield stats_store
    await stats_store.close()


@pytest_asyncio.fixture
async def seeded_store(store, regions, merchants, orders, evaluations):
    await store.load_rows("regions", regions)
    await store.load_rows("merchants", merchants)
    await store.load_rows("orders", orders)
    await store.load_rows("evaluations", evaluations)
    return store


@pytest.fixture
def fixed_now():
    """2025-06-12 12:00 UTC: June 10 and 11 are closed days."""
    return lambda: datetime(2025, 6, 12, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def service(seeded_store, cache, fixed_now):
    stats_service = StatsService(seeded_store, cache=cache, tz=UTC, now=fixed_now)
    await stats_service.start()
    return stats_service
