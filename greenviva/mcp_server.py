"""MCP server exposing the earnings dashboard tools for Claude Desktop."""

import logging
import sys
from datetime import date
from pathlib import Path

# Load .env before importing config (which also calls load_dotenv)
from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent.parent / ".env")

# Configure logging to stderr (stdout is reserved for MCP stdio transport)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)

import httpx
from mcp.server.fastmcp import FastMCP
from greenviva import config
from greenviva.earnings import daily_summary, get_daily_transfers, get_monthly_totals, monthly_tip_totals
from greenviva.tools.aggregate import local_today
from greenviva.tools.cache import PeriodCache
from greenviva.tools.gmail import GmailClient, GmailError, load_credentials
from greenviva.tools.mirror import TipMirror
from greenviva.tools.sync import SyncCoordinator
from greenviva.tools.tips import TipStore

mcp = FastMCP("greenviva")

_store = TipStore(config.DATA_DIR / "tips.json")
_daily_cache = PeriodCache(config.DATA_DIR / "cache_daily.json", ttl=config.DAILY_CACHE_TTL)
_monthly_cache = PeriodCache(config.DATA_DIR / "cache_monthly.json", ttl=config.MONTHLY_CACHE_TTL)


_http = httpx.AsyncClient(timeout=30.0)
_sync: SyncCoordinator | None = None


def _client() -> GmailClient:
    return GmailClient(load_credentials().token, http_client=_http)


def _coordinator(client: GmailClient) -> SyncCoordinator:
    """The single coordinator for _store, pushing with the newest credential."""
    global _sync
    if _sync is None:
        _sync = SyncCoordinator(_store, TipMirror(client))
    else:
        _sync.mirror = TipMirror(client)
    return _sync


def _parse_day(target_date: str) -> date:
    return date.fromisoformat(target_date) if target_date else local_today()


def _format_totals(title: str, totals) -> str:
    lines = [title]
    for t in totals:
        lines.append(f"- {t.period}: €{t.total_amount:.2f} ({t.count})")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Earnings
# ---------------------------------------------------------------------------


@mcp.tool()
async def get_daily_earnings(target_date: str = "") -> str:
    """Transfers and tips for a day with progress toward the daily goal. Date format: YYYY-MM-DD. Defaults to today."""
    try:
        day = _parse_day(target_date)
    except ValueError:
        return "Invalid date format. Use YYYY-MM-DD."
    try:
        transfers = await get_daily_transfers(_client(), day, _daily_cache)
    except GmailError as e:
        logger.error("Daily earnings failed: %s", e)
        return f"Could not read Gmail: {e}"

    summary = daily_summary(day, transfers, _store.list_by_date(day.isoformat()))
    lines = [
        f"Earnings for {summary.day}: €{summary.total:.2f} / €{summary.goal:.2f} ({summary.progress_percent:.1f}%)",
        f"Transfers: €{summary.transfer_total:.2f} ({summary.transfer_count})",
        f"Tips: €{summary.tip_total:.2f} ({summary.tip_count})",
    ]
    for t in transfers:
        lines.append(f"- {t.timestamp[11:16]} {t.sender or 'Unknown'}: €{t.amount:.2f}")
    return "\n".join(lines)


@mcp.tool()
async def get_monthly_overview(year: int = 0) -> str:
    """Monthly transfer and tip totals for a year. Defaults to the current year."""
    year = year or local_today().year
    try:
        totals = await get_monthly_totals(_client(), year, _monthly_cache)
    except GmailError as e:
        logger.error("Monthly overview failed: %s", e)
        return f"Could not read Gmail: {e}"
    tips = monthly_tip_totals(_store.list_all(), year)
    return (
        _format_totals(f"Transfers in {year}:", totals)
        + "\n\n"
        + _format_totals(f"Tips in {year}:", tips)
    )


# ---------------------------------------------------------------------------
# Tips
# ---------------------------------------------------------------------------


@mcp.tool()
def list_tips(target_date: str = "") -> str:
    """List cash tips, optionally only for one day (YYYY-MM-DD)."""
    tips = _store.list_by_date(target_date) if target_date else _store.list_all()
    if not tips:
        return "No tips recorded."
    lines = []
    for t in tips:
        note = f" — {t.note}" if t.note else ""
        flag = "" if t.synced else " (not synced)"
        lines.append(f"- [{t.id}] {t.date[:10]} €{t.amount:.2f}{note}{flag}")
    return "\n".join(lines)


@mcp.tool()
async def add_tip(amount: float, target_date: str = "", note: str = "") -> str:
    """Record a cash tip and push the tip collection to Gmail. Date format: YYYY-MM-DD. Defaults to today."""
    try:
        day = _parse_day(target_date)
    except ValueError:
        return "Invalid date format. Use YYYY-MM-DD."
    if amount < 0:
        return "Tip amount must not be negative."
    tip_date = f"{day.isoformat()}T12:00:00"

    try:
        client = _client()
    except GmailError as e:
        logger.error("Gmail unavailable, storing tip locally only: %s", e)
        tip = _store.add(amount, tip_date, note or None)
        return f"Tip €{tip.amount:.2f} saved locally (id {tip.id}); Gmail sync will happen on the next sync_tips."

    coordinator = _coordinator(client)
    tip = await coordinator.add_tip(amount, tip_date, note or None)
    await coordinator.drain()

    synced = _store.get(tip.id).synced
    status = "" if synced else " Not pushed to Gmail yet, run sync_tips to push it."
    return f"Added tip €{tip.amount:.2f} on {day.isoformat()} (id {tip.id}).{status}"


@mcp.tool()
async def delete_tip(tip_id: str) -> str:
    """Delete a tip by id. Use list_tips first to find the id."""
    try:
        client = _client()
    except GmailError as e:
        logger.error("Gmail unavailable, deleting tip locally only: %s", e)
        if not _store.delete(tip_id):
            return f"No tip with id {tip_id}."
        return f"Deleted tip {tip_id} locally; Gmail sync will happen on the next sync_tips."

    coordinator = _coordinator(client)
    removed = await coordinator.delete_tip(tip_id)
    await coordinator.drain()
    return f"Deleted tip {tip_id}." if removed else f"No tip with id {tip_id}."


@mcp.tool()
async def sync_tips() -> str:
    """Merge tips from the Gmail sync draft into the local store, then push the result back."""
    try:
        coordinator = _coordinator(_client())
        tips = await coordinator.initialize()
        await coordinator.sync()
    except GmailError as e:
        logger.error("Tip sync failed: %s", e)
        return f"Tip sync failed: {e}"
    return f"Tips synced ({len(tips)} total)."


if __name__ == "__main__":
    mcp.run()
