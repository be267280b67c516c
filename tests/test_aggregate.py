from datetime import date, datetime

import pytest

from greenviva.tools.aggregate import (
    PeriodTotal,
    local_today,
    month_label,
    period_start,
    sort_periods,
    totals_by_day,
    totals_by_month,
)
from greenviva.tools.parsing import Transfer
from greenviva.tools.tips import Tip
from fakes import TZ


def test_year_always_has_twelve_months_in_order():
    transfers = [
        Transfer("A", 10.0, "2025-04-02T09:00:00+03:00"),
        Transfer("B", 2.5, "2025-04-20T18:00:00+03:00"),
        Transfer("C", 1.25, "2025-12-31T23:00:00+02:00"),
    ]
    totals = totals_by_month(transfers, 2025, TZ)

    assert len(totals) == 12
    assert [t.period for t in totals][:4] == ["January 2025", "February 2025", "March 2025", "April 2025"]
    assert totals[3] == PeriodTotal("April 2025", 12.5, 2)
    assert totals[11] == PeriodTotal("December 2025", 1.25, 1)
    assert all(t.total_amount == 0 and t.count == 0 for t in totals[:3])


def test_empty_year_is_zero_filled():
    totals = totals_by_month([], 2024, TZ)
    assert len(totals) == 12
    assert sum(t.total_amount for t in totals) == 0


def test_records_outside_year_are_ignored():
    transfers = [Transfer("A", 5.0, "2024-12-31T10:00:00+02:00")]
    assert sum(t.count for t in totals_by_month(transfers, 2025, TZ)) == 0


def test_grouping_uses_local_calendar_date():
    # 22:30 UTC on Jan 31 is already Feb 1 in Athens
    transfers = [Transfer("A", 3.0, "2025-01-31T22:30:00+00:00")]
    totals = totals_by_month(transfers, 2025, TZ)
    assert totals[0].count == 0
    assert totals[1].count == 1


def test_tips_group_by_their_date():
    tips = [
        Tip(id="t1", amount=4.0, date="2025-03-21T12:00:00"),
        Tip(id="t2", amount=1.0, date="2025-03-02"),
    ]
    assert totals_by_month(tips, 2025, TZ)[2] == PeriodTotal("March 2025", 5.0, 2)


def test_daily_range_is_zero_filled():
    transfers = [Transfer("A", 2.0, "2025-03-02T10:00:00+02:00")]
    totals = totals_by_day(transfers, date(2025, 3, 1), date(2025, 3, 3), TZ)
    assert totals == [
        PeriodTotal("2025-03-01", 0.0, 0),
        PeriodTotal("2025-03-02", 2.0, 1),
        PeriodTotal("2025-03-03", 0.0, 0),
    ]


def test_daily_range_rejects_inverted_bounds():
    with pytest.raises(ValueError):
        totals_by_day([], date(2025, 3, 3), date(2025, 3, 1), TZ)


def test_sort_is_chronological_not_alphabetical():
    shuffled = [PeriodTotal("April 2025"), PeriodTotal("January 2025"), PeriodTotal("December 2024")]
    assert [t.period for t in sort_periods(shuffled)] == ["December 2024", "January 2025", "April 2025"]


def test_period_start_round_trips_labels():
    assert period_start(month_label(date(2025, 9, 14))) == date(2025, 9, 1)
    assert period_start("2025-09-14") == date(2025, 9, 14)


def test_sums_are_rounded_to_cents():
    transfers = [Transfer("A", 0.1, "2025-05-01T10:00:00+03:00")] * 3
    assert totals_by_month(transfers, 2025, TZ)[4].total_amount == 0.3


def test_today_follows_configured_timezone_not_host():
    # 22:30 UTC on Mar 21 is already Mar 22 in Athens
    now = datetime.fromisoformat("2025-03-21T22:30:00+00:00")
    assert local_today(TZ, now=now) == date(2025, 3, 22)
    assert local_today("UTC", now=now) == date(2025, 3, 21)
