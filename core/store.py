"""
DuckDB store for bookings data and statistics rollups.

Holds the transactional tables the engine reads (orders, evaluations,
merchants, regions), the ``order_stats`` rollup table it writes, and the
derived read-side views. The transactional write path lives elsewhere;
``load_rows`` exists for imports and tests.

Access is serialized with an asyncio lock and blocking DuckDB calls run on
a single-worker thread pool, so the event loop never blocks and a reader
never observes a rollup batch half-written.
"""
import asyncio
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

import duckdb
import pandas as pd

from core.config import config
from core.exceptions import QueryTimeoutError, StoreUnavailableError
from core.models import Granularity, PRICE_RANGE_UNSET, PriceRange, StatRecord
from core.observability import get_logger, timed

logger = get_logger(__name__)

DEFAULT_QUERY_TIMEOUT = config.store.query_timeout

# Columns of order_stats in insert order
STAT_COLUMNS = [
    "stat_key", "stat_date", "period_start", "stat_type",
    "region_id", "price_range", "merchant_id", "is_total",
    "total_orders", "confirmed_orders", "completed_orders", "cancelled_orders",
    "avg_user_score", "avg_merchant_score",
    "evaluation_count", "user_evaluation_count", "merchant_evaluation_count",
]

# Tables load_rows may write to
LOADABLE_TABLES = {"regions", "merchants", "orders", "evaluations"}


def price_band_sql(expr: str) -> str:
    """SQL CASE mapping a numeric price onto PriceRange bands; upper bounds inclusive."""
    return f"""
        CASE
            WHEN {expr} <= 500 THEN '{PriceRange.UP_TO_500.value}'
            WHEN {expr} <= 1000 THEN '{PriceRange.UP_TO_1000.value}'
            WHEN {expr} <= 2000 THEN '{PriceRange.UP_TO_2000.value}'
            ELSE '{PriceRange.OVER_2000.value}'
        END
    """


def local_date_sql(column: str, tz_name: str) -> str:
    """SQL for the local date of an epoch-seconds column."""
    return f"CAST(timezone('{tz_name}', to_timestamp({column})) AS DATE)"


class StatsStore:
    """
    Async-compatible DuckDB store.

    Usage:
        store = StatsStore(db_path)
        await store.connect()
        rows = await store.fetch_orders(start_ts, end_ts)
    """

    def __init__(
        self,
        db_path: Path = None,
        tz: ZoneInfo = None,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
    ):
        self.db_path = Path(db_path or config.store.db_path)
        self.tz = tz or config.stats.tz
        self.query_timeout = query_timeout
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = asyncio.Lock()  # Serializes all database access
        self._executor: Optional[ThreadPoolExecutor] = None
        self._total_queries = 0

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """
        Open the database, create schema and views.

        Raises:
            StoreUnavailableError: if the file cannot be opened (locked, missing dir...)
        """
        async with self._lock:
            if self._connection is not None:
                return
            try:
                if str(self.db_path) != ":memory:":
                    self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = duckdb.connect(str(self.db_path))
            except (duckdb.Error, OSError) as e:
                raise StoreUnavailableError("Cannot open DuckDB store", str(e))

            try:
                self._init_schema(conn)
                self._create_views(conn)
            except duckdb.Error as e:
                conn.close()
                raise StoreUnavailableError("Cannot initialize DuckDB schema", str(e))

            self._connection = conn
            # Single worker - DuckDB connections require serialized access
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="duckdb")
            logger.info(f"DuckDB connected: {self.db_path}")

    async def close(self) -> None:
        """Close the connection and thread pool."""
        async with self._lock:
            if self._executor:
                self._executor.shutdown(wait=True)
                self._executor = None
            if self._connection:
                self._connection.close()
                self._connection = None
                logger.info("DuckDB connection closed")

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def ping(self) -> None:
        """
        Check the store answers queries, connecting first if needed.

        Raises:
            StoreUnavailableError: if the store is not usable
        """
        if self._connection is None:
            await self.connect()
        try:
            await self._fetch_one("SELECT 1", timeout=5.0)
        except (duckdb.Error, QueryTimeoutError) as e:
            raise StoreUnavailableError("DuckDB store not responding", str(e))

    @asynccontextmanager
    async def connection(self):
        """Get the connection, holding the lock for the whole block."""
        if self._connection is None:
            await self.connect()
        async with self._lock:
            if self._connection is None:
                raise StoreUnavailableError("DuckDB store is closed")
            yield self._connection

    # ─── Query Execution with Timeout ────────────────────────────────────────

    async def _run(self, func, query: str, timeout: float):
        async with self.connection():
            self._total_queries += 1
            loop = asyncio.get_running_loop()
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(self._executor, func),
                    timeout=timeout
                )
            except asyncio.TimeoutError:
                raise QueryTimeoutError(query, timeout)

    async def _fetch_one(self, query: str, params: list = None, timeout: float = None) -> Optional[tuple]:
        """Execute a query and fetch one row on the DB thread."""
        def _query():
            return self._connection.execute(query, params or []).fetchone()
        return await self._run(_query, query, timeout or self.query_timeout)

    async def _fetch_all(self, query: str, params: list = None, timeout: float = None) -> List[tuple]:
        """Execute a query and fetch all rows on the DB thread."""
        def _query():
            return self._connection.execute(query, params or []).fetchall()
        return await self._run(_query, query, timeout or self.query_timeout)

    # ─── Schema ───────────────────────────────────────────────────────────────

    def _init_schema(self, conn: duckdb.DuckDBPyConnection) -> None:
        """Create tables if not exists. Timestamps are epoch seconds."""
        conn.execute("""
        CREATE TABLE IF NOT EXISTS regions (
            id INTEGER PRIMARY KEY,
            name VARCHAR NOT NULL,
            sort_order INTEGER DEFAULT 0,
            active BOOLEAN DEFAULT TRUE
        );

        CREATE TABLE IF NOT EXISTS merchants (
            id INTEGER PRIMARY KEY,
            user_id BIGINT,
            teacher_name VARCHAR,
            region_id INTEGER,
            price1 DECIMAL(12, 2),
            price2 DECIMAL(12, 2),
            status VARCHAR DEFAULT 'active',
            created_at BIGINT
        );

        -- No NOT NULL on status/created_at: legacy rows may lack them
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY,
            merchant_id INTEGER,
            region_id INTEGER,
            price_range VARCHAR,
            actual_price DECIMAL(12, 2),
            status VARCHAR,
            created_at BIGINT,
            updated_at BIGINT
        );

        CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders(created_at);

        CREATE TABLE IF NOT EXISTS evaluations (
            id INTEGER PRIMARY KEY,
            order_id INTEGER,
            evaluator_type VARCHAR,
            evaluator_id BIGINT,
            target_id INTEGER,
            overall_score INTEGER,
            status VARCHAR DEFAULT 'pending',
            created_at BIGINT
        );

        CREATE INDEX IF NOT EXISTS idx_evaluations_created_at ON evaluations(created_at);

        -- Rollups; stat_key encodes (stat_type, period_start, is_total, dimensions)
        CREATE TABLE IF NOT EXISTS order_stats (
            stat_key VARCHAR PRIMARY KEY,
            stat_date DATE NOT NULL,
            period_start BIGINT NOT NULL,
            stat_type VARCHAR NOT NULL,
            region_id INTEGER,
            price_range VARCHAR,
            merchant_id INTEGER,
            is_total BOOLEAN NOT NULL,
            total_orders INTEGER DEFAULT 0,
            confirmed_orders INTEGER DEFAULT 0,
            completed_orders INTEGER DEFAULT 0,
            cancelled_orders INTEGER DEFAULT 0,
            avg_user_score DOUBLE DEFAULT 0,
            avg_merchant_score DOUBLE DEFAULT 0,
            evaluation_count INTEGER DEFAULT 0,
            user_evaluation_count INTEGER DEFAULT 0,
            merchant_evaluation_count INTEGER DEFAULT 0
        );

        """)

    def _create_views(self, conn: duckdb.DuckDBPyConnection) -> None:
        """Derived read-side views, evaluated on every read."""
        tz_name = str(self.tz)
        order_date = local_date_sql("created_at", tz_name)
        eval_date = local_date_sql("e.created_at", tz_name)
        avg_price = "(m.price1 + m.price2) / 2"

        conn.execute(f"""
        CREATE OR REPLACE VIEW v_order_stats AS
        SELECT
            {order_date} AS order_date,
            region_id,
            price_range,
            merchant_id,
            status,
            COUNT(*) AS order_count,
            AVG(actual_price) AS avg_price
        FROM orders
        WHERE created_at IS NOT NULL
        GROUP BY order_date, region_id, price_range, merchant_id, status
        """)

        conn.execute(f"""
        CREATE OR REPLACE VIEW v_evaluation_stats AS
        SELECT
            e.evaluator_type,
            e.target_id,
            {eval_date} AS eval_date,
            o.region_id,
            o.price_range,
            COUNT(*) AS total_evaluations,
            AVG(e.overall_score) AS avg_score
        FROM evaluations e
        LEFT JOIN orders o ON e.order_id = o.id
        WHERE e.status = 'completed'
          AND e.overall_score IS NOT NULL
          AND e.created_at IS NOT NULL
        GROUP BY e.evaluator_type, e.target_id, eval_date, o.region_id, o.price_range
        """)

        conn.execute(f"""
        CREATE OR REPLACE VIEW v_merchant_rankings AS
        SELECT
            m.id AS merchant_id,
            m.teacher_name,
            m.region_id,
            r.name AS region_name,
            AVG(e.overall_score) AS avg_overall_score,
            COUNT(e.id) AS total_evaluations,
            CASE
                WHEN m.price1 IS NOT NULL AND m.price2 IS NOT NULL THEN {price_band_sql(avg_price)}
                WHEN m.price1 IS NOT NULL THEN {price_band_sql("m.price1")}
                ELSE '{PRICE_RANGE_UNSET}'
            END AS price_range
        FROM merchants m
        JOIN evaluations e
          ON e.target_id = m.id
         AND e.evaluator_type = 'user'
         AND e.status = 'completed'
         AND e.overall_score IS NOT NULL
        LEFT JOIN regions r ON m.region_id = r.id
        GROUP BY m.id, m.teacher_name, m.region_id, r.name, m.price1, m.price2
        """)

    # ─── Transactional reads ──────────────────────────────────────────────────

    async def fetch_orders(self, start_ts: int, end_ts: int, limit: Optional[int] = None) -> List[tuple]:
        """
        Raw orders with ``start_ts <= created_at < end_ts``, newest first.

        Row shape: (id, region_id, price_range, merchant_id, status, created_at)
        """
        sql = """
            SELECT id, region_id, price_range, merchant_id, status, created_at
            FROM orders
            WHERE created_at >= ? AND created_at < ?
            ORDER BY created_at DESC, id DESC
        """
        params: list = [start_ts, end_ts]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return await self._fetch_all(sql, params)

    async def fetch_evaluations(self, start_ts: int, end_ts: int, limit: Optional[int] = None) -> List[tuple]:
        """
        Completed evaluations in the window with their order's dimensions.

        Row shape: (id, evaluator_type, overall_score, created_at,
                    order_id, region_id, price_range, merchant_id);
        the order columns are NULL when the order is unknown.
        """
        sql = """
            SELECT e.id, e.evaluator_type, e.overall_score, e.created_at,
                   o.id, o.region_id, o.price_range, o.merchant_id
            FROM evaluations e
            LEFT JOIN orders o ON e.order_id = o.id
            WHERE e.status = 'completed'
              AND e.created_at >= ? AND e.created_at < ?
            ORDER BY e.created_at DESC, e.id DESC
        """
        params: list = [start_ts, end_ts]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return await self._fetch_all(sql, params)

    # ─── Rollup table ─────────────────────────────────────────────────────────

    @timed("upsert_stat_records", warn_threshold_ms=5000)
    async def upsert_stat_records(self, records: Sequence[StatRecord]) -> int:
        """
        Insert-or-replace rollup records by ``stat_key`` in one transaction.

        The lock is held for the whole batch, so readers see either the
        previous rows or the complete new set for the period.

        Returns:
            Number of records written
        """
        if not records:
            return 0

        records_df = pd.DataFrame([
            {
                "stat_key": r.stat_key,
                "stat_date": r.stat_date,
                "period_start": int(r.period_start.timestamp()),
                "stat_type": r.granularity.value,
                "region_id": r.region_id,
                "price_range": r.price_range,
                "merchant_id": r.merchant_id,
                "is_total": r.is_total,
                "total_orders": r.total_orders,
                "confirmed_orders": r.confirmed_orders,
                "completed_orders": r.completed_orders,
                "cancelled_orders": r.cancelled_orders,
                "avg_user_score": r.avg_user_score,
                "avg_merchant_score": r.avg_merchant_score,
                "evaluation_count": r.evaluation_count,
                "user_evaluation_count": r.user_evaluation_count,
                "merchant_evaluation_count": r.merchant_evaluation_count,
            }
            for r in records
        ], columns=STAT_COLUMNS)
        # Nullable id columns must stay integer, not float with NaN
        records_df["region_id"] = records_df["region_id"].astype("Int64")
        records_df["merchant_id"] = records_df["merchant_id"].astype("Int64")

        columns = ", ".join(STAT_COLUMNS)
        select = columns.replace("stat_date", "CAST(stat_date AS DATE)", 1)

        def _write():
            conn = self._connection
            conn.execute("BEGIN TRANSACTION")
            try:
                conn.register("stg_order_stats", records_df)
                conn.execute(f"""
                    INSERT OR REPLACE INTO order_stats ({columns})
                    SELECT {select} FROM stg_order_stats
                """)
                conn.unregister("stg_order_stats")
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
            return len(records_df)

        count = await self._run(_write, "INSERT OR REPLACE INTO order_stats", self.query_timeout)
        logger.debug(f"Upserted {count} rollup records")
        return count

    async def get_stat_records(self, granularity: Granularity, period_start: datetime) -> List[StatRecord]:
        """All rollup records of one period, ordered by key."""
        rows = await self._fetch_all(f"""
            SELECT {", ".join(STAT_COLUMNS)}
            FROM order_stats
            WHERE stat_type = ? AND period_start = ?
            ORDER BY stat_key
        """, [granularity.value, int(period_start.timestamp())])

        return [
            StatRecord(
                stat_date=row[1],
                period_start=datetime.fromtimestamp(row[2], self.tz),
                granularity=Granularity(row[3]),
                region_id=row[4],
                price_range=row[5],
                merchant_id=row[6],
                is_total=row[7],
                total_orders=row[8],
                confirmed_orders=row[9],
                completed_orders=row[10],
                cancelled_orders=row[11],
                avg_user_score=row[12],
                avg_merchant_score=row[13],
                evaluation_count=row[14],
                user_evaluation_count=row[15],
                merchant_evaluation_count=row[16],
            )
            for row in rows
        ]

    @timed("fetch_rollup_rows")
    async def fetch_rollup_rows(
        self,
        granularity: Granularity,
        date_from: date,
        date_to: date,
        dimensions: Dict[str, Any],
        limit: int,
    ) -> List[tuple]:
        """
        Per-date sums of rollup rows, newest first.

        Without dimension filters only the "all dimensions" rows are read;
        with filters only detail rows matching every filter exactly, summed
        over the dimensions left unfiltered. Total and detail rows are never
        summed together. Averages are recombined weighted by their counts.

        Row shape: (stat_date, total, confirmed, completed, cancelled,
                    avg_user_score, avg_merchant_score, evaluation_count)
        """
        where = ["stat_type = ?", "stat_date BETWEEN ? AND ?"]
        params: list = [granularity.value, date_from, date_to]

        if dimensions:
            where.append("is_total = FALSE")
            for column, value in sorted(dimensions.items()):
                where.append(f"{column} = ?")
                params.append(value)
        else:
            where.append("is_total = TRUE")

        params.append(limit)
        return await self._fetch_all(f"""
            SELECT
                stat_date,
                SUM(total_orders),
                SUM(confirmed_orders),
                SUM(completed_orders),
                SUM(cancelled_orders),
                SUM(avg_user_score * user_evaluation_count) / NULLIF(SUM(user_evaluation_count), 0),
                SUM(avg_merchant_score * merchant_evaluation_count) / NULLIF(SUM(merchant_evaluation_count), 0),
                SUM(evaluation_count)
            FROM order_stats
            WHERE {" AND ".join(where)}
            GROUP BY stat_date
            ORDER BY stat_date DESC
            LIMIT ?
        """, params)

    # ─── Derived views ────────────────────────────────────────────────────────

    async def get_top_regions(self, since: date, limit: int = 5) -> List[Dict[str, Any]]:
        """Regions by order volume since a date, with their average user score."""
        rows = await self._fetch_all("""
            WITH volume AS (
                SELECT region_id, SUM(order_count) AS total_orders
                FROM v_order_stats
                WHERE order_date >= ? AND region_id IS NOT NULL
                GROUP BY region_id
            ),
            scores AS (
                SELECT region_id,
                       SUM(avg_score * total_evaluations) / SUM(total_evaluations) AS avg_score,
                       SUM(total_evaluations) AS total_evaluations
                FROM v_evaluation_stats
                WHERE eval_date >= ? AND evaluator_type = 'user' AND region_id IS NOT NULL
                GROUP BY region_id
            )
            SELECT v.region_id, r.name, v.total_orders,
                   COALESCE(s.avg_score, 0), COALESCE(s.total_evaluations, 0)
            FROM volume v
            LEFT JOIN regions r ON v.region_id = r.id
            LEFT JOIN scores s ON v.region_id = s.region_id
            ORDER BY v.total_orders DESC, v.region_id
            LIMIT ?
        """, [since, since, limit])

        return [
            {
                "regionId": row[0],
                "regionName": row[1],
                "totalOrders": int(row[2]),
                "avgScore": round(float(row[3]), 2),
                "evaluationCount": int(row[4]),
            }
            for row in rows
        ]

    async def get_merchant_rankings(
        self,
        region_id: Optional[int] = None,
        price_range: Optional[str] = None,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        """Merchants by average user score, then by number of evaluations."""
        where = ["1=1"]
        params: list = []
        if region_id is not None:
            where.append("region_id = ?")
            params.append(region_id)
        if price_range is not None:
            where.append("price_range = ?")
            params.append(price_range)
        params.append(limit)

        rows = await self._fetch_all(f"""
            SELECT merchant_id, teacher_name, region_id, region_name,
                   avg_overall_score, total_evaluations, price_range
            FROM v_merchant_rankings
            WHERE {" AND ".join(where)}
            ORDER BY avg_overall_score DESC, total_evaluations DESC, merchant_id
            LIMIT ?
        """, params)

        return [
            {
                "merchantId": row[0],
                "teacherName": row[1],
                "regionId": row[2],
                "regionName": row[3],
                "avgScore": round(float(row[4]), 2),
                "evaluationCount": int(row[5]),
                "priceRange": row[6],
            }
            for row in rows
        ]

    async def get_evaluation_summary(self, date_from: date, date_to: date) -> Dict[str, Any]:
        """Evaluation counts and averages per evaluator type."""
        rows = await self._fetch_all("""
            SELECT evaluator_type,
                   SUM(total_evaluations),
                   SUM(avg_score * total_evaluations) / SUM(total_evaluations)
            FROM v_evaluation_stats
            WHERE eval_date BETWEEN ? AND ?
            GROUP BY evaluator_type
        """, [date_from, date_to])

        by_type = {row[0]: (int(row[1]), round(float(row[2]), 2)) for row in rows}
        user_count, user_avg = by_type.get("user", (0, 0.0))
        merchant_count, merchant_avg = by_type.get("merchant", (0, 0.0))
        return {
            "startDate": date_from.isoformat(),
            "endDate": date_to.isoformat(),
            "userEvaluations": user_count,
            "avgUserScore": user_avg,
            "merchantEvaluations": merchant_count,
            "avgMerchantScore": merchant_avg,
        }

    async def get_region_distribution(self, date_from: date, date_to: date) -> List[Dict[str, Any]]:
        rows = await self._fetch_all("""
            SELECT v.region_id, r.name, SUM(v.order_count) AS count
            FROM v_order_stats v
            LEFT JOIN regions r ON v.region_id = r.id
            WHERE v.order_date BETWEEN ? AND ?
            GROUP BY v.region_id, r.name
            ORDER BY count DESC, v.region_id
        """, [date_from, date_to])
        return [{"regionId": row[0], "region": row[1], "count": int(row[2])} for row in rows]

    async def get_price_distribution(self, date_from: date, date_to: date) -> List[Dict[str, Any]]:
        rows = await self._fetch_all("""
            SELECT price_range, SUM(order_count) AS count
            FROM v_order_stats
            WHERE order_date BETWEEN ? AND ?
            GROUP BY price_range
        """, [date_from, date_to])

        band_order = {band: i for i, band in enumerate(PriceRange.values())}
        rows.sort(key=lambda row: band_order.get(row[0], len(band_order)))
        return [{"priceRange": row[0], "count": int(row[1])} for row in rows]

    async def get_status_summary(self, date_from: date, date_to: date) -> List[Dict[str, Any]]:
        rows = await self._fetch_all("""
            SELECT status, SUM(order_count) AS count
            FROM v_order_stats
            WHERE order_date BETWEEN ? AND ?
            GROUP BY status
            ORDER BY count DESC, status
        """, [date_from, date_to])
        return [{"status": row[0], "count": int(row[1])} for row in rows]

    # ─── Loading and monitoring ───────────────────────────────────────────────

    async def load_rows(self, table: str, rows: List[Dict[str, Any]]) -> int:
        """
        Insert or replace rows into a transactional table.

        Used by data imports and tests; the production write path is the
        booking service.
        """
        if table not in LOADABLE_TABLES:
            raise ValueError(f"Cannot load into table {table!r}")
        if not rows:
            return 0

        columns = list(rows[0].keys())
        placeholders = ", ".join("?" * len(columns))
        sql = f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
        values = [[row.get(c) for c in columns] for row in rows]

        def _write():
            self._connection.executemany(sql, values)
            return len(values)

        return await self._run(_write, sql, self.query_timeout)

    async def get_stats(self) -> Dict[str, Any]:
        """Row counts and file size for health checks."""
        counts = {}
        for table in ("orders", "evaluations", "merchants", "regions", "order_stats"):
            row = await self._fetch_one(f"SELECT COUNT(*) FROM {table}")
            counts[table] = row[0]

        path = self.db_path
        counts["db_size_mb"] = (
            round(path.stat().st_size / 1024 / 1024, 2) if path.exists() else 0
        )
        counts["total_queries"] = self._total_queries
        return counts


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_store_instance: Optional[StatsStore] = None
_store_lock = asyncio.Lock()


async def get_store() -> StatsStore:
    """Get singleton store instance (coroutine-safe). Connects lazily on first query."""
    global _store_instance
    async with _store_lock:
        if _store_instance is None:
            _store_instance = StatsStore()
    return _store_instance


async def close_store() -> None:
    """Close singleton store instance."""
    global _store_instance
    if _store_instance:
        await _store_instance.close()
        _store_instance = None
