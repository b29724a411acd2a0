"""
Period boundary helpers.

Every rollup covers a half-open bucket [start, end) in the stats timezone.
Hour buckets step in UTC so DST transitions never produce a 0h or 2h hour;
day, week and month buckets follow local wall-clock midnight.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from core.models import Granularity, Period


def _to_local(dt: datetime, tz: ZoneInfo) -> datetime:
    if dt.tzinfo is None:
        raise ValueError("Naive datetime; expected timezone-aware")
    return dt.astimezone(tz)


def _local_midnight(d: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(d, time.min, tzinfo=tz)


def floor_to_bucket(dt: datetime, granularity: Granularity, tz: ZoneInfo) -> datetime:
    """Start of the bucket that contains ``dt``."""
    local = _to_local(dt, tz)

    if granularity == Granularity.HOURLY:
        utc = local.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)
        return utc.astimezone(tz)
    if granularity == Granularity.DAILY:
        return _local_midnight(local.date(), tz)
    if granularity == Granularity.WEEKLY:
        return _local_midnight(week_start(local.date()), tz)
    if granularity == Granularity.MONTHLY:
        return _local_midnight(month_start(local.date()), tz)
    raise ValueError(f"Unknown granularity: {granularity}")


def next_bucket_start(start: datetime, granularity: Granularity, tz: ZoneInfo) -> datetime:
    """Start of the bucket following the one beginning at ``start``."""
    if granularity == Granularity.HOURLY:
        return (start.astimezone(timezone.utc) + timedelta(hours=1)).astimezone(tz)
    local = _to_local(start, tz)
    if granularity == Granularity.DAILY:
        return _local_midnight(local.date() + timedelta(days=1), tz)
    if granularity == Granularity.WEEKLY:
        return _local_midnight(local.date() + timedelta(days=7), tz)
    if granularity == Granularity.MONTHLY:
        d = local.date()
        if d.month == 12:
            return _local_midnight(date(d.year + 1, 1, 1), tz)
        return _local_midnight(date(d.year, d.month + 1, 1), tz)
    raise ValueError(f"Unknown granularity: {granularity}")


def previous_bucket_start(start: datetime, granularity: Granularity, tz: ZoneInfo) -> datetime:
    """Start of the bucket preceding the one beginning at ``start``."""
    if granularity == Granularity.HOURLY:
        return (start.astimezone(timezone.utc) - timedelta(hours=1)).astimezone(tz)
    local = _to_local(start, tz)
    if granularity == Granularity.DAILY:
        return _local_midnight(local.date() - timedelta(days=1), tz)
    if granularity == Granularity.WEEKLY:
        return _local_midnight(local.date() - timedelta(days=7), tz)
    if granularity == Granularity.MONTHLY:
        d = local.date()
        if d.month == 1:
            return _local_midnight(date(d.year - 1, 12, 1), tz)
        return _local_midnight(date(d.year, d.month - 1, 1), tz)
    raise ValueError(f"Unknown granularity: {granularity}")


def closed_period(granularity: Granularity, fired_at: datetime, tz: ZoneInfo) -> Period:
    """
    Most recently completed bucket relative to ``fired_at``.

    Never the in-progress bucket: firing at 02:00:00 on June 11 closes
    June 10 for daily, and firing at 14:00:30 closes 13:00-14:00 for hourly.
    """
    current_start = floor_to_bucket(fired_at, granularity, tz)
    return Period(previous_bucket_start(current_start, granularity, tz), current_start)


def iter_closed_periods(
    granularity: Granularity,
    date_from: date,
    date_to: date,
    now: datetime,
    tz: ZoneInfo,
) -> Iterator[Period]:
    """
    Yield every closed bucket overlapping the inclusive local date range.

    Buckets that have not ended by ``now`` are skipped.
    """
    start = floor_to_bucket(_local_midnight(date_from, tz), granularity, tz)
    range_end = _local_midnight(date_to + timedelta(days=1), tz)

    while start.timestamp() < range_end.timestamp():
        end = next_bucket_start(start, granularity, tz)
        if end.timestamp() > now.timestamp():
            break
        yield Period(start, end)
        start = end


def bucket_date(ts: int, granularity: Granularity, tz: ZoneInfo) -> date:
    """``stat_date`` of the bucket an epoch timestamp falls in."""
    moment = datetime.fromtimestamp(ts, tz)
    return floor_to_bucket(moment, granularity, tz).date()


def week_start(d: date) -> date:
    """Monday of the week containing ``d``."""
    return d - timedelta(days=d.weekday())


def month_start(d: date) -> date:
    return d.replace(day=1)


def query_window(granularity: Granularity, date_from: date, date_to: date, tz: ZoneInfo) -> Optional[Period]:
    """
    Raw-data window covering every bucket whose ``stat_date`` lies in the
    inclusive date range, i.e. the buckets a rollup read would return.

    Returns None when no bucket of this granularity starts in the range
    (e.g. a Tuesday..Wednesday weekly query).
    """
    range_start = _local_midnight(date_from, tz)
    start = floor_to_bucket(range_start, granularity, tz)
    if start.timestamp() < range_start.timestamp():
        start = next_bucket_start(start, granularity, tz)

    last_moment = _local_midnight(date_to + timedelta(days=1), tz) - timedelta(seconds=1)
    end = next_bucket_start(floor_to_bucket(last_moment, granularity, tz), granularity, tz)

    if start.timestamp() >= end.timestamp():
        return None
    return Period(start, end)
