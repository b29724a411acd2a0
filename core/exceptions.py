"""
Exception hierarchy for the statistics engine.

Exception Hierarchy:
    StatsError (base)
    ├── StoreUnavailableError  - Store not reachable/ready (retry with backoff)
    ├── MalformedRowError      - One source row failed to parse (skipped)
    ├── QueryTimeoutError      - Store query exceeded its timeout
    ├── RowLimitExceededError  - Fallback scan hit the row cap
    └── RecomputeFailureError  - A rollup period failed to recompute

    ValidationError            - Filter/input validation failed
"""


class StatsError(Exception):
    """Base exception for all statistics engine errors."""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class StoreUnavailableError(StatsError):
    """
    Transactional store is not reachable or not initialized yet.

    Recoverable: callers wait with backoff instead of failing permanently.
    """

    def __init__(self, message: str, details: str = None, retry_after: float = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class MalformedRowError(StatsError):
    """A source row could not be parsed into an aggregation input."""

    def __init__(self, table: str, row_id=None, details: str = None):
        self.table = table
        self.row_id = row_id
        super().__init__(f"Malformed {table} row {row_id}", details)


class QueryTimeoutError(StatsError):
    """
    Store query exceeded its timeout.

    Usually means a missing index or an unexpectedly wide window.
    """

    def __init__(self, query: str, timeout: float, details: str = None):
        self.query = query[:200] + "..." if len(query) > 200 else query
        self.timeout = timeout
        super().__init__(f"Query timed out after {timeout}s", details)


class RowLimitExceededError(StatsError):
    """Realtime fallback would scan more rows than allowed."""

    def __init__(self, limit: int, details: str = None):
        self.limit = limit
        super().__init__(f"Row limit of {limit} exceeded", details)


class RecomputeFailureError(StatsError):
    """A rollup period could not be recomputed; the period stays stale."""

    def __init__(self, granularity: str, period_start, details: str = None):
        self.granularity = granularity
        self.period_start = period_start
        super().__init__(f"Recompute of {granularity} period {period_start} failed", details)


class ValidationError(Exception):
    """
    Input validation failed.

    Used for validating filter parameters before processing.
    """

    def __init__(self, field: str, message: str, value=None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.field}: {self.message} (got: {self.value!r})"
        return f"{self.field}: {self.message}"
