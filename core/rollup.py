"""
Pure aggregation shared by rollup recomputation and the realtime fallback.

Both paths parse raw rows with the same parsers and feed the same
accumulator, so a fallback result has exactly the field set and zero-fill
semantics of a rollup-backed one.
"""
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, Iterable, List, Tuple, TypeVar
from zoneinfo import ZoneInfo

from core.exceptions import MalformedRowError
from core.models import (
    EvaluationRow,
    EvaluatorType,
    Granularity,
    OrderRow,
    OrderStatus,
    Period,
    StatRecord,
    StatsFilter,
    StatsRow,
)
from core.observability import get_logger
from core.periods import bucket_date

logger = get_logger(__name__)

T = TypeVar("T")

# Key of the "all dimensions" group
TOTAL_KEY = (None, None, None)

SCORE_PRECISION = 4   # stored averages
RESULT_PRECISION = 2  # averages returned to consumers


@dataclass
class Accumulator:
    """Running counts and score sums for one group."""
    total_orders: int = 0
    confirmed_orders: int = 0
    completed_orders: int = 0
    cancelled_orders: int = 0
    user_score_sum: float = 0.0
    user_evaluations: int = 0
    merchant_score_sum: float = 0.0
    merchant_evaluations: int = 0

    def add_order(self, order: OrderRow) -> None:
        self.total_orders += 1
        if order.status == OrderStatus.CONFIRMED.value:
            self.confirmed_orders += 1
        elif order.status == OrderStatus.COMPLETED.value:
            self.completed_orders += 1
        elif order.status == OrderStatus.CANCELLED.value:
            self.cancelled_orders += 1

    def add_evaluation(self, evaluation: EvaluationRow) -> None:
        if evaluation.evaluator_type == EvaluatorType.USER:
            self.user_score_sum += evaluation.overall_score
            self.user_evaluations += 1
        else:
            self.merchant_score_sum += evaluation.overall_score
            self.merchant_evaluations += 1

    @property
    def evaluation_count(self) -> int:
        return self.user_evaluations + self.merchant_evaluations

    def avg_user_score(self, precision: int = SCORE_PRECISION) -> float:
        if not self.user_evaluations:
            return 0.0
        return round(self.user_score_sum / self.user_evaluations, precision)

    def avg_merchant_score(self, precision: int = SCORE_PRECISION) -> float:
        if not self.merchant_evaluations:
            return 0.0
        return round(self.merchant_score_sum / self.merchant_evaluations, precision)

    def to_stats_row(self, stat_date: date) -> StatsRow:
        return StatsRow(
            stat_date=stat_date,
            total_orders=self.total_orders,
            confirmed_orders=self.confirmed_orders,
            completed_orders=self.completed_orders,
            cancelled_orders=self.cancelled_orders,
            avg_user_score=self.avg_user_score(RESULT_PRECISION),
            avg_merchant_score=self.avg_merchant_score(RESULT_PRECISION),
            evaluation_count=self.evaluation_count,
        )


def parse_rows(rows: Iterable[tuple], parser: Callable[[tuple], T]) -> Tuple[List[T], int]:
    """
    Parse raw rows, skipping malformed ones.

    Returns:
        (parsed rows, number of skipped rows)
    """
    parsed: List[T] = []
    skipped = 0
    for row in rows:
        try:
            parsed.append(parser(row))
        except MalformedRowError as e:
            skipped += 1
            logger.warning(
                f"Skipping malformed row: {e}",
                extra={"table": e.table, "row_id": e.row_id}
            )
    return parsed, skipped


def build_stat_records(
    granularity: Granularity,
    period: Period,
    orders: Iterable[OrderRow],
    evaluations: Iterable[EvaluationRow],
) -> List[StatRecord]:
    """
    Aggregate one closed period into rollup records.

    Two independent passes: one grouped by (region, price band, merchant)
    for every combination present in the data, and one "all dimensions"
    pass over every row. The total is never derived by summing detail
    groups. Evaluations whose order is unknown only reach the total.
    The total record is emitted even for an empty period, so a closed
    period with no activity reads back as zeros instead of falling back.

    Records are sorted by key so repeated runs yield identical output.
    """
    orders = list(orders)
    evaluations = list(evaluations)

    details: Dict[tuple, Accumulator] = defaultdict(Accumulator)
    for order in orders:
        details[order.dimensions].add_order(order)
    for evaluation in evaluations:
        if evaluation.order_found:
            details[evaluation.dimensions].add_evaluation(evaluation)

    total = Accumulator()
    for order in orders:
        total.add_order(order)
    for evaluation in evaluations:
        total.add_evaluation(evaluation)

    records = [
        _to_record(granularity, period, key, acc, is_total=False)
        for key, acc in details.items()
    ]
    records.append(_to_record(granularity, period, TOTAL_KEY, total, is_total=True))
    records.sort(key=lambda r: r.stat_key)
    return records


def _to_record(
    granularity: Granularity,
    period: Period,
    key: tuple,
    acc: Accumulator,
    is_total: bool,
) -> StatRecord:
    region_id, price_range, merchant_id = key
    return StatRecord(
        stat_date=period.stat_date,
        period_start=period.start,
        granularity=granularity,
        region_id=region_id,
        price_range=price_range,
        merchant_id=merchant_id,
        is_total=is_total,
        total_orders=acc.total_orders,
        confirmed_orders=acc.confirmed_orders,
        completed_orders=acc.completed_orders,
        cancelled_orders=acc.cancelled_orders,
        avg_user_score=acc.avg_user_score(),
        avg_merchant_score=acc.avg_merchant_score(),
        evaluation_count=acc.evaluation_count,
        user_evaluation_count=acc.user_evaluations,
        merchant_evaluation_count=acc.merchant_evaluations,
    )


def realtime_rows(
    stats_filter: StatsFilter,
    orders: Iterable[OrderRow],
    evaluations: Iterable[EvaluationRow],
    tz: ZoneInfo,
    max_days: int,
) -> List[StatsRow]:
    """
    Aggregate raw rows of a whole query window into per-date rows.

    With no dimension filter every row counts (the rollup "total" pass);
    otherwise only rows matching every given dimension, exactly as the
    rollup detail rows are selected. Rows are bucketed by the same
    ``stat_date`` the rollup for the filter's granularity would carry.
    """
    granularity = stats_filter.granularity
    filtered = bool(stats_filter.dimensions)
    by_date: Dict[date, Accumulator] = defaultdict(Accumulator)

    for order in orders:
        if stats_filter.matches(order):
            by_date[bucket_date(order.created_at, granularity, tz)].add_order(order)

    for evaluation in evaluations:
        if filtered and not evaluation.order_found:
            continue
        if stats_filter.matches(evaluation):
            by_date[bucket_date(evaluation.created_at, granularity, tz)].add_evaluation(evaluation)

    rows = [acc.to_stats_row(d) for d, acc in by_date.items()]
    rows.sort(key=lambda r: r.stat_date, reverse=True)
    return rows[:max_days]


def round_score(value) -> float:
    """Consumer-facing average; None (no evaluations) becomes 0.0."""
    if value is None:
        return 0.0
    return round(float(value), RESULT_PRECISION)
