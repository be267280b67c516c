"""Group transfers and tips into per-day or per-month totals."""

import calendar
import logging
from dataclasses import dataclass, asdict
from datetime import date, datetime, timedelta, timezone
from typing import Iterable
from zoneinfo import ZoneInfo

from greenviva import config

logger = logging.getLogger(__name__)

MONTH_NAMES = list(calendar.month_name)[1:]


@dataclass
class PeriodTotal:
    """Sum and count of the records that fall into one day or month."""
    period: str  # "2025-03-21" or "March 2025"
    total_amount: float = 0.0
    count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PeriodTotal":
        return cls(
            period=data["period"],
            total_amount=float(data.get("total_amount", 0)),
            count=int(data.get("count", 0)),
        )


def local_datetime(value: str | datetime, tz: str = config.TIMEZONE) -> datetime | None:
    """Parse an ISO datetime and move it to the local timezone.

    Naive values are taken to be local already. Returns None if unparseable.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(value)
        except (TypeError, ValueError):
            return None
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(ZoneInfo(tz))


def local_today(tz: str = config.TIMEZONE, now: datetime | None = None) -> date:
    """Today's date in the configured timezone, not the host's."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(ZoneInfo(tz)).date()


def _record_moment(record, tz: str) -> datetime | None:
    """Transfers carry a timestamp, tips a date."""
    value = getattr(record, "timestamp", None) or getattr(record, "date", None)
    return local_datetime(value, tz) if value else None


def day_label(d: date) -> str:
    return d.strftime("%Y-%m-%d")


def month_label(d: date) -> str:
    return f"{MONTH_NAMES[d.month - 1]} {d.year}"


def period_start(label: str) -> date:
    """Inverse of day_label / month_label."""
    try:
        return date.fromisoformat(label)
    except ValueError:
        month_name, year = label.rsplit(" ", 1)
        return date(int(year), MONTH_NAMES.index(month_name) + 1, 1)


def sort_periods(totals: Iterable[PeriodTotal]) -> list[PeriodTotal]:
    """Chronological order ("January 2025" before "April 2025")."""
    return sorted(totals, key=lambda t: period_start(t.period))


def _add(total: PeriodTotal, amount: float) -> None:
    total.total_amount = round(total.total_amount + amount, 2)
    total.count += 1


def totals_by_month(records: Iterable, year: int, tz: str = config.TIMEZONE) -> list[PeriodTotal]:
    """One entry per month of ``year``, zero-filled, January first."""
    months = [PeriodTotal(period=month_label(date(year, m, 1))) for m in range(1, 13)]
    for record in records:
        moment = _record_moment(record, tz)
        if moment is None or moment.year != year:
            continue
        _add(months[moment.month - 1], record.amount)
    return months


def totals_by_day(records: Iterable, start: date, end: date, tz: str = config.TIMEZONE) -> list[PeriodTotal]:
    """One entry per day from ``start`` to ``end`` inclusive, zero-filled."""
    if end < start:
        raise ValueError("end must not be before start")
    days: dict[date, PeriodTotal] = {}
    current = start
    while current <= end:
        days[current] = PeriodTotal(period=day_label(current))
        current += timedelta(days=1)
    for record in records:
        moment = _record_moment(record, tz)
        if moment is None:
            continue
        bucket = days.get(moment.date())
        if bucket is not None:
            _add(bucket, record.amount)
    return list(days.values())


def sum_amounts(records: Iterable) -> float:
    return round(sum(r.amount for r in records), 2)
