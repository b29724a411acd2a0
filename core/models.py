"""
Domain models for the statistics engine.

Provides type-safe dataclasses for source rows (orders, evaluations),
rollup records, query filters and query results. These models are the
single source of truth for data structures used by the store, the
aggregation code and the web layer.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from core.cache import build_cache_key
from core.exceptions import MalformedRowError, ValidationError


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class Granularity(str, Enum):
    """Rollup time-bucket size."""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class OrderStatus(str, Enum):
    """Order lifecycle statuses."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EvaluatorType(str, Enum):
    """Who wrote an evaluation: a user rating a merchant or the reverse."""
    USER = "user"
    MERCHANT = "merchant"


class PriceRange(str, Enum):
    """Price bands used as a rollup dimension."""
    UP_TO_500 = "0-500"
    UP_TO_1000 = "500-1000"
    UP_TO_2000 = "1000-2000"
    OVER_2000 = "2000+"

    @classmethod
    def values(cls) -> List[str]:
        return [p.value for p in cls]


# Merchant ranking rows without prices
PRICE_RANGE_UNSET = "unset"

MAX_SCORE = 10


# ═══════════════════════════════════════════════════════════════════════════════
# SOURCE ROWS
# ═══════════════════════════════════════════════════════════════════════════════

def _optional_int(value: Any, table: str, row_id: Any, column: str) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise MalformedRowError(table, row_id, f"{column}={value!r} is not an integer")


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


@dataclass(frozen=True)
class OrderRow:
    """One order as read from the transactional store."""
    id: int
    region_id: Optional[int]
    price_range: Optional[str]
    merchant_id: Optional[int]
    status: str
    created_at: int  # epoch seconds

    @classmethod
    def from_row(cls, row: tuple) -> "OrderRow":
        """
        Parse ``(id, region_id, price_range, merchant_id, status, created_at)``.

        Raises:
            MalformedRowError: if a column cannot be interpreted
        """
        row_id, region_id, price_range, merchant_id, status, created_at = row

        status = _optional_str(status)
        if status is None:
            raise MalformedRowError("orders", row_id, "missing status")

        if created_at is None:
            raise MalformedRowError("orders", row_id, "missing created_at")
        try:
            created_at = int(created_at)
        except (TypeError, ValueError):
            raise MalformedRowError("orders", row_id, f"created_at={created_at!r} is not a timestamp")

        return cls(
            id=row_id,
            region_id=_optional_int(region_id, "orders", row_id, "region_id"),
            price_range=_optional_str(price_range),
            merchant_id=_optional_int(merchant_id, "orders", row_id, "merchant_id"),
            status=status.lower(),
            created_at=created_at,
        )

    @property
    def dimensions(self) -> tuple:
        return (self.region_id, self.price_range, self.merchant_id)


@dataclass(frozen=True)
class EvaluationRow:
    """A completed evaluation with the dimensions of the order it belongs to."""
    id: int
    evaluator_type: EvaluatorType
    overall_score: float
    created_at: int
    order_found: bool
    region_id: Optional[int] = None
    price_range: Optional[str] = None
    merchant_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: tuple) -> "EvaluationRow":
        """
        Parse ``(id, evaluator_type, overall_score, created_at, order_id,
        region_id, price_range, merchant_id)`` where the last four come from
        a LEFT JOIN on orders.

        Raises:
            MalformedRowError: if a column cannot be interpreted
        """
        row_id, evaluator_type, score, created_at, order_id, region_id, price_range, merchant_id = row

        try:
            evaluator = EvaluatorType(_optional_str(evaluator_type))
        except ValueError:
            raise MalformedRowError("evaluations", row_id, f"unknown evaluator_type {evaluator_type!r}")

        if score is None:
            raise MalformedRowError("evaluations", row_id, "missing overall_score")
        try:
            score = float(score)
        except (TypeError, ValueError):
            raise MalformedRowError("evaluations", row_id, f"overall_score={score!r} is not numeric")
        if not 0 <= score <= MAX_SCORE:
            raise MalformedRowError("evaluations", row_id, f"overall_score {score} out of range")

        try:
            created_at = int(created_at)
        except (TypeError, ValueError):
            raise MalformedRowError("evaluations", row_id, f"created_at={created_at!r} is not a timestamp")

        return cls(
            id=row_id,
            evaluator_type=evaluator,
            overall_score=score,
            created_at=created_at,
            order_found=order_id is not None,
            region_id=_optional_int(region_id, "evaluations", row_id, "region_id"),
            price_range=_optional_str(price_range),
            merchant_id=_optional_int(merchant_id, "evaluations", row_id, "merchant_id"),
        )

    @property
    def dimensions(self) -> tuple:
        return (self.region_id, self.price_range, self.merchant_id)


# ═══════════════════════════════════════════════════════════════════════════════
# PERIODS AND ROLLUP RECORDS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Period:
    """Half-open interval [start, end) of timezone-aware datetimes."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("Period bounds must be timezone-aware")
        if self.start.timestamp() >= self.end.timestamp():
            raise ValueError(f"Empty period: {self.start} >= {self.end}")

    @property
    def start_ts(self) -> int:
        return int(self.start.timestamp())

    @property
    def end_ts(self) -> int:
        return int(self.end.timestamp())

    @property
    def stat_date(self) -> date:
        return self.start.date()


@dataclass(frozen=True)
class StatRecord:
    """
    One row of the rollup table.

    ``is_total`` marks the "all dimensions" aggregate; its dimension columns
    are always null. Detail rows may also carry null dimensions when the
    source order had none, which is why the flag is stored explicitly.
    """
    stat_date: date
    period_start: datetime
    granularity: Granularity
    region_id: Optional[int] = None
    price_range: Optional[str] = None
    merchant_id: Optional[int] = None
    is_total: bool = False
    total_orders: int = 0
    confirmed_orders: int = 0
    completed_orders: int = 0
    cancelled_orders: int = 0
    avg_user_score: float = 0.0
    avg_merchant_score: float = 0.0
    evaluation_count: int = 0
    user_evaluation_count: int = 0
    merchant_evaluation_count: int = 0

    @property
    def stat_key(self) -> str:
        """Unique key: granularity, period and dimension tuple (nulls as '*')."""
        def part(value):
            return "*" if value is None else str(value)

        return "|".join([
            self.granularity.value,
            str(int(self.period_start.timestamp())),
            "total" if self.is_total else "detail",
            part(self.region_id),
            part(self.price_range),
            part(self.merchant_id),
        ])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statKey": self.stat_key,
            "statDate": self.stat_date.isoformat(),
            "periodStart": self.period_start.isoformat(),
            "granularity": self.granularity.value,
            "regionId": self.region_id,
            "priceRange": self.price_range,
            "merchantId": self.merchant_id,
            "isTotal": self.is_total,
            "totalOrders": self.total_orders,
            "confirmedOrders": self.confirmed_orders,
            "completedOrders": self.completed_orders,
            "cancelledOrders": self.cancelled_orders,
            "avgUserScore": self.avg_user_score,
            "avgMerchantScore": self.avg_merchant_score,
            "evaluationCount": self.evaluation_count,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# QUERY FILTER AND RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

# External (camelCase) parameter name -> StatsFilter field
_PARAM_ALIASES = {
    "dateFrom": "date_from",
    "dateTo": "date_to",
    "regionId": "region_id",
    "priceRange": "price_range",
    "merchantId": "merchant_id",
    "statType": "granularity",
    "granularity": "granularity",
}


def _parse_date(field_name: str, value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(field_name, "expected YYYY-MM-DD", value)


def _parse_id(field_name: str, value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError(field_name, "expected an integer", value)
    if parsed <= 0:
        raise ValidationError(field_name, "must be positive", value)
    return parsed


@dataclass(frozen=True)
class StatsFilter:
    """
    Value object describing a statistics query.

    Two filters are cache-equivalent iff every field matches exactly; an
    absent optional field is its own equivalence class.
    """
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    region_id: Optional[int] = None
    price_range: Optional[str] = None
    merchant_id: Optional[int] = None
    granularity: Granularity = Granularity.DAILY

    def __post_init__(self):
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValidationError(
                "dateFrom",
                f"must not be after dateTo ({self.date_to.isoformat()})",
                self.date_from.isoformat(),
            )

    @classmethod
    def from_params(cls, params: Optional[Dict[str, Any]] = None) -> "StatsFilter":
        """
        Build a filter from external parameters.

        Accepts both the camelCase names used by dashboards (``dateFrom``,
        ``regionId``, ``statType``...) and the snake_case field names.

        Raises:
            ValidationError: on unknown keys or invalid values
        """
        values: Dict[str, Any] = {}
        for key, value in (params or {}).items():
            name = _PARAM_ALIASES.get(key, key)
            if name not in cls.__dataclass_fields__:
                raise ValidationError(key, "unknown filter field")
            values[name] = value

        granularity = values.get("granularity") or Granularity.DAILY
        try:
            granularity = Granularity(granularity)
        except ValueError:
            raise ValidationError("statType", f"must be one of {[g.value for g in Granularity]}", granularity)

        price_range = _optional_str(values.get("price_range"))
        if price_range is not None and price_range not in PriceRange.values():
            raise ValidationError("priceRange", f"must be one of {PriceRange.values()}", price_range)

        return cls(
            date_from=_parse_date("dateFrom", values.get("date_from")),
            date_to=_parse_date("dateTo", values.get("date_to")),
            region_id=_parse_id("regionId", values.get("region_id")),
            price_range=price_range,
            merchant_id=_parse_id("merchantId", values.get("merchant_id")),
            granularity=granularity,
        )

    @property
    def dimensions(self) -> Dict[str, Any]:
        """Dimension filters that are present, keyed by column name."""
        dims = {
            "region_id": self.region_id,
            "price_range": self.price_range,
            "merchant_id": self.merchant_id,
        }
        return {k: v for k, v in dims.items() if v is not None}

    def canonical(self) -> Dict[str, Any]:
        """Present fields only, in external naming, JSON-serializable."""
        fields = {
            "dateFrom": self.date_from.isoformat() if self.date_from else None,
            "dateTo": self.date_to.isoformat() if self.date_to else None,
            "regionId": self.region_id,
            "priceRange": self.price_range,
            "merchantId": self.merchant_id,
            "statType": self.granularity.value,
        }
        return {k: v for k, v in fields.items() if v is not None}

    def cache_key(self, query_type: str = "stats") -> str:
        return build_cache_key(query_type, self.canonical())

    def matches(self, row) -> bool:
        """Whether a parsed source row satisfies every dimension filter."""
        return all(getattr(row, name) == value for name, value in self.dimensions.items())


@dataclass(frozen=True)
class StatsRow:
    """Per-date aggregate returned to consumers; never null, zero-filled."""
    stat_date: date
    total_orders: int = 0
    confirmed_orders: int = 0
    completed_orders: int = 0
    cancelled_orders: int = 0
    avg_user_score: float = 0.0
    avg_merchant_score: float = 0.0
    evaluation_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "statDate": self.stat_date.isoformat(),
            "totalOrders": self.total_orders,
            "confirmedOrders": self.confirmed_orders,
            "completedOrders": self.completed_orders,
            "cancelledOrders": self.cancelled_orders,
            "avgUserScore": self.avg_user_score,
            "avgMerchantScore": self.avg_merchant_score,
            "evaluationCount": self.evaluation_count,
        }


class ResultSource(str, Enum):
    """Which resolution step produced a query result."""
    CACHE = "cache"
    ROLLUP = "rollup"
    REALTIME = "realtime"


@dataclass(frozen=True)
class StatsResult:
    """Result of a statistics query. ``from_cache`` never changes the shape."""
    rows: List[StatsRow] = field(default_factory=list)
    from_cache: bool = False
    source: ResultSource = ResultSource.ROLLUP

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": [row.to_dict() for row in self.rows],
            "fromCache": self.from_cache,
            "source": self.source.value,
        }
