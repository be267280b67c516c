"""Earnings queries — daily transfers, monthly totals, and progress toward the daily goal.

Period results are cached (see tools/cache.py); on a miss the matching
notification emails are listed, fetched in batches and parsed.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import date, datetime, time, timedelta
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from greenviva import config
from greenviva.tools.aggregate import PeriodTotal, day_label, local_datetime, sort_periods, sum_amounts, totals_by_month
from greenviva.tools.cache import PeriodCache
from greenviva.tools.gmail import GmailClient
from greenviva.tools.parsing import Transfer
from greenviva.tools.pipeline import BatchFetcher, ProgressCallback
from greenviva.tools.tips import Tip

logger = logging.getLogger(__name__)

MAX_MONTHLY_MESSAGES = 2000


# ---------------------------------------------------------------------------
# Gmail queries
# ---------------------------------------------------------------------------

def local_bounds(start: date, end: date, tz: str = config.TIMEZONE) -> tuple[datetime, datetime]:
    """Local midnight at ``start`` through local midnight after ``end``."""
    zone = ZoneInfo(tz)
    return (
        datetime.combine(start, time.min, tzinfo=zone),
        datetime.combine(end + timedelta(days=1), time.min, tzinfo=zone),
    )


def transfers_query(start: datetime, end: datetime, sender: str = config.SENDER_ADDRESS) -> str:
    """Gmail search for provider notifications in [start, end).

    Epoch seconds make Gmail honour the exact local boundaries instead of
    interpreting dates in its own timezone.
    """
    return f"from:{sender} after:{int(start.timestamp())} before:{int(end.timestamp())}"


# ---------------------------------------------------------------------------
# Period queries (cached)
# ---------------------------------------------------------------------------

async def get_daily_transfers(
    client: GmailClient,
    day: date,
    cache: PeriodCache,
    fetcher: Optional[BatchFetcher] = None,
    tz: str = config.TIMEZONE,
) -> list[Transfer]:
    """Transfers received on a local day, newest first."""
    key = f"transfers-{day_label(day)}"
    cached = cache.get(key)
    if cached is not None:
        logger.info("Returning cached data for %s", key)
        return [Transfer.from_dict(t) for t in cached]

    fetcher = fetcher or BatchFetcher(client, tz=tz)
    start, end = local_bounds(day, day, tz)
    ids = await client.list_message_ids(transfers_query(start, end))
    transfers = [
        t for t in await fetcher.fetch_transfers(ids)
        if local_datetime(t.timestamp, tz).date() == day
    ]
    transfers.sort(key=lambda t: t.timestamp, reverse=True)

    cache.set(key, [t.to_dict() for t in transfers])
    logger.info("Fetched %d transfers for %s", len(transfers), day)
    return transfers


async def get_monthly_totals(
    client: GmailClient,
    year: int,
    cache: PeriodCache,
    on_progress: Optional[ProgressCallback] = None,
    fetcher: Optional[BatchFetcher] = None,
    tz: str = config.TIMEZONE,
) -> list[PeriodTotal]:
    """Twelve monthly totals for ``year``, zero-filled and in calendar order."""
    key = f"monthly-{year}"
    cached = cache.get(key)
    if cached is not None:
        logger.info("Returning cached data for %s", key)
        return sort_periods(PeriodTotal.from_dict(t) for t in cached)

    fetcher = fetcher or BatchFetcher(client, tz=tz)
    start, end = local_bounds(date(year, 1, 1), date(year, 12, 31), tz)
    ids = await client.list_message_ids(transfers_query(start, end), max_results=MAX_MONTHLY_MESSAGES)
    if on_progress:
        on_progress(0, len(ids))
    transfers = await fetcher.fetch_transfers(ids, on_progress=on_progress)
    totals = totals_by_month(transfers, year, tz)

    cache.set(key, [t.to_dict() for t in totals])
    logger.info("Computed monthly totals for %d from %d transfers", year, len(transfers))
    return totals


def monthly_tip_totals(tips: list[Tip], year: int, tz: str = config.TIMEZONE) -> list[PeriodTotal]:
    return totals_by_month(tips, year, tz)


# ---------------------------------------------------------------------------
# Goal progress
# ---------------------------------------------------------------------------

@dataclass
class DailySummary:
    day: str
    transfer_total: float
    transfer_count: int
    tip_total: float
    tip_count: int
    total: float
    goal: float
    progress_percent: float  # can exceed 100
    bar_percent: float       # capped at 100 for display

    def to_dict(self) -> dict:
        return asdict(self)


def daily_summary(day: date, transfers: list[Transfer], tips: list[Tip], goal: float = config.DAILY_GOAL) -> DailySummary:
    transfer_total = sum_amounts(transfers)
    tip_total = sum_amounts(tips)
    total = round(transfer_total + tip_total, 2)
    progress = round(total / goal * 100, 1) if goal > 0 else 0.0
    return DailySummary(
        day=day_label(day),
        transfer_total=transfer_total,
        transfer_count=len(transfers),
        tip_total=tip_total,
        tip_count=len(tips),
        total=total,
        goal=goal,
        progress_percent=progress,
        bar_percent=min(progress, 100.0),
    )


# ---------------------------------------------------------------------------
# Stale response guard
# ---------------------------------------------------------------------------

class RequestGeneration:
    """Counter that tells whether a response still belongs to the newest request."""

    def __init__(self):
        self._current = 0

    def begin(self) -> int:
        self._current += 1
        return self._current

    def is_current(self, ticket: int) -> bool:
        return ticket == self._current


class PeriodView:
    """Holds the data for the selected period.

    Selecting a new period while an older load is still running makes the
    older result stale; it is dropped instead of overwriting newer data.
    Extra arguments to ``select`` are passed through to the loader.
    """

    def __init__(self, loader: Callable[..., Awaitable[Any]]):
        self._loader = loader
        self._generation = RequestGeneration()
        self.selected: Any = None
        self.data: Any = None

    async def select(self, period: Any, *args: Any, **kwargs: Any) -> bool:
        """Load ``period``. Returns False if a newer selection superseded it."""
        ticket = self._generation.begin()
        self.selected = period
        try:
            result = await self._loader(period, *args, **kwargs)
        except Exception:
            if not self._generation.is_current(ticket):
                logger.debug("Ignoring failure of stale load for %s", period)
                return False
            raise
        if not self._generation.is_current(ticket):
            logger.debug("Discarding stale result for %s", period)
            return False
        self.data = result
        return True
