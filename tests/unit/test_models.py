"""
Tests for core.models module.
"""
from datetime import date, datetime, timezone

import pytest

from core.exceptions import MalformedRowError, ValidationError
from core.models import (
    EvaluationRow,
    EvaluatorType,
    Granularity,
    OrderRow,
    Period,
    PriceRange,
    ResultSource,
    StatRecord,
    StatsFilter,
    StatsResult,
    StatsRow,
)

JUNE_10 = int(datetime(2025, 6, 10, 9, tzinfo=timezone.utc).timestamp())


class TestPriceRange:

    def test_values(self):
        assert PriceRange.values() == ["0-500", "500-1000", "1000-2000", "2000+"]


class TestOrderRow:

    def test_parses_row(self):
        order = OrderRow.from_row((1, 1, "0-500", 10, "Completed", JUNE_10))
        assert order.status == "completed"
        assert order.dimensions == (1, "0-500", 10)

    def test_null_dimensions_allowed(self):
        order = OrderRow.from_row((1, None, None, None, "pending", JUNE_10))
        assert order.dimensions == (None, None, None)

    @pytest.mark.parametrize("row", [
        (1, 1, "0-500", 10, None, JUNE_10),
        (1, 1, "0-500", 10, "  ", JUNE_10),
        (1, 1, "0-500", 10, "completed", None),
        (1, "north", "0-500", 10, "completed", JUNE_10),
    ])
    def test_malformed(self, row):
        with pytest.raises(MalformedRowError) as exc_info:
            OrderRow.from_row(row)
        assert exc_info.value.table == "orders"
        assert exc_info.value.row_id == 1


class TestEvaluationRow:

    def test_parses_joined_row(self):
        evaluation = EvaluationRow.from_row((100, "user", 9, JUNE_10, 1, 1, "0-500", 10))
        assert evaluation.evaluator_type == EvaluatorType.USER
        assert evaluation.overall_score == 9.0
        assert evaluation.order_found is True
        assert evaluation.dimensions == (1, "0-500", 10)

    def test_unknown_order(self):
        evaluation = EvaluationRow.from_row((100, "merchant", 5, JUNE_10, None, None, None, None))
        assert evaluation.order_found is False

    @pytest.mark.parametrize("row", [
        (100, "admin", 9, JUNE_10, 1, 1, "0-500", 10),
        (100, "user", None, JUNE_10, 1, 1, "0-500", 10),
        (100, "user", 11, JUNE_10, 1, 1, "0-500", 10),
        (100, "user", "great", JUNE_10, 1, 1, "0-500", 10),
    ])
    def test_malformed(self, row):
        with pytest.raises(MalformedRowError):
            EvaluationRow.from_row(row)


class TestPeriod:

    def test_requires_aware_datetimes(self):
        with pytest.raises(ValueError):
            Period(datetime(2025, 6, 10), datetime(2025, 6, 11))

    def test_rejects_empty(self):
        moment = datetime(2025, 6, 10, tzinfo=timezone.utc)
        with pytest.raises(ValueError):
            Period(moment, moment)

    def test_bounds_as_epoch_seconds(self):
        period = Period(
            datetime(2025, 6, 10, tzinfo=timezone.utc),
            datetime(2025, 6, 11, tzinfo=timezone.utc),
        )
        assert period.end_ts - period.start_ts == 86400
        assert period.stat_date == date(2025, 6, 10)


class TestStatRecord:

    def _record(self, **kwargs):
        defaults = dict(
            stat_date=date(2025, 6, 10),
            period_start=datetime(2025, 6, 10, tzinfo=timezone.utc),
            granularity=Granularity.DAILY,
        )
        defaults.update(kwargs)
        return StatRecord(**defaults)

    def test_stat_key_encodes_nulls(self):
        record = self._record(region_id=1)
        assert record.stat_key == f"daily|{1749513600}|detail|1|*|*"

    def test_total_and_null_detail_keys_differ(self):
        """A detail group with all-null dimensions never collides with the total."""
        assert self._record(is_total=True).stat_key != self._record(is_total=False).stat_key

    def test_to_dict(self):
        d = self._record(region_id=1, total_orders=3).to_dict()
        assert d["statDate"] == "2025-06-10"
        assert d["regionId"] == 1
        assert d["totalOrders"] == 3
        assert d["avgUserScore"] == 0.0


class TestStatsFilter:

    def test_from_camel_case_params(self):
        f = StatsFilter.from_params({
            "dateFrom": "2025-06-01",
            "dateTo": "2025-06-10",
            "regionId": "1",
            "priceRange": "0-500",
            "statType": "weekly",
        })
        assert f.date_from == date(2025, 6, 1)
        assert f.date_to == date(2025, 6, 10)
        assert f.region_id == 1
        assert f.price_range == "0-500"
        assert f.granularity == Granularity.WEEKLY

    def test_snake_case_params(self):
        f = StatsFilter.from_params({"region_id": 2, "granularity": "monthly"})
        assert f.region_id == 2
        assert f.granularity == Granularity.MONTHLY

    def test_defaults(self):
        f = StatsFilter.from_params({})
        assert f.granularity == Granularity.DAILY
        assert f.dimensions == {}

    @pytest.mark.parametrize("params,field", [
        ({"dateFrom": "10.06.2025"}, "dateFrom"),
        ({"regionId": "abc"}, "regionId"),
        ({"regionId": 0}, "regionId"),
        ({"priceRange": "cheap"}, "priceRange"),
        ({"statType": "yearly"}, "statType"),
        ({"colour": "red"}, "colour"),
        ({"dateFrom": "2025-06-10", "dateTo": "2025-06-01"}, "dateFrom"),
    ])
    def test_invalid_params(self, params, field):
        with pytest.raises(ValidationError) as exc_info:
            StatsFilter.from_params(params)
        assert exc_info.value.field == field

    def test_cache_key_order_independent(self):
        a = StatsFilter.from_params({"regionId": 1, "dateFrom": "2025-06-01"})
        b = StatsFilter.from_params({"dateFrom": "2025-06-01", "regionId": 1})
        assert a.cache_key() == b.cache_key()

    def test_cache_key_absent_field_distinct(self):
        assert StatsFilter().cache_key() != StatsFilter(region_id=1).cache_key()

    def test_cache_key_granularity_distinct(self):
        daily = StatsFilter(region_id=1)
        weekly = StatsFilter(region_id=1, granularity=Granularity.WEEKLY)
        assert daily.cache_key() != weekly.cache_key()

    def test_cache_key_family_prefix(self):
        assert StatsFilter().cache_key("chart").startswith("chart:")

    def test_matches(self):
        f = StatsFilter(region_id=1, merchant_id=10)
        assert f.matches(OrderRow(1, 1, "0-500", 10, "completed", JUNE_10))
        assert not f.matches(OrderRow(2, 1, "0-500", 11, "completed", JUNE_10))
        assert not f.matches(OrderRow(3, None, None, None, "completed", JUNE_10))


class TestStatsResult:

    def test_to_dict_shape(self):
        result = StatsResult(
            rows=[StatsRow(stat_date=date(2025, 6, 10), total_orders=3)],
            from_cache=True,
            source=ResultSource.CACHE,
        )
        d = result.to_dict()

        assert d["fromCache"] is True
        assert d["source"] == "cache"
        assert d["data"] == [{
            "statDate": "2025-06-10",
            "totalOrders": 3,
            "confirmedOrders": 0,
            "completedOrders": 0,
            "cancelledOrders": 0,
            "avgUserScore": 0.0,
            "avgMerchantScore": 0.0,
            "evaluationCount": 0,
        }]
