"""FastAPI app — earnings endpoints over Gmail plus tip storage and sync."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from functools import lru_cache
from pathlib import Path
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, field_validator

from greenviva import config
from greenviva.earnings import PeriodView, daily_summary, get_daily_transfers, get_monthly_totals, monthly_tip_totals
from greenviva.session import SessionTracker, session_key
from greenviva.tools.aggregate import local_today, sum_amounts
from greenviva.tools.cache import PeriodCache
from greenviva.tools.gmail import AuthenticationExpired, GmailClient, GmailError, RateLimited, load_credentials
from greenviva.tools.mirror import TipMirror
from greenviva.tools.sync import SyncCoordinator
from greenviva.tools.tips import Tip, TipStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

SESSION_EXPIRED_MESSAGE = "Your session has expired. Please sign in again."
RATE_LIMITED_MESSAGE = "Too many requests. Please try again in a few minutes."
CONNECTION_ERROR_MESSAGE = "Connection error. Please check your internet connection and try again."

_coordinators: dict[Path, SyncCoordinator] = {}  # tip store path -> coordinator
_views: dict[str, PeriodView] = {}  # viewer -> monthly view


def _forget_session(key: str) -> None:
    _views.pop(key, None)


_sessions = SessionTracker(on_end=_forget_session)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.http = httpx.AsyncClient(timeout=30.0)
    yield
    _sessions.close()
    for coordinator in _coordinators.values():
        await coordinator.drain()
    await app.state.http.aclose()


app = FastAPI(title="GreenViva Earnings Dashboard", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@app.exception_handler(AuthenticationExpired)
async def _auth_expired(request: Request, exc: AuthenticationExpired):
    logger.warning("Authentication error: %s", exc)
    return JSONResponse(status_code=401, content={"error": SESSION_EXPIRED_MESSAGE})


@app.exception_handler(RateLimited)
async def _rate_limited(request: Request, exc: RateLimited):
    logger.warning("Rate limited: %s", exc)
    return JSONResponse(status_code=429, content={"error": RATE_LIMITED_MESSAGE})


@app.exception_handler(GmailError)
async def _gmail_error(request: Request, exc: GmailError):
    logger.error("Gmail error: %s", exc)
    return JSONResponse(status_code=503, content={"error": CONNECTION_ERROR_MESSAGE})


def _error_event(exc: Exception) -> dict:
    if isinstance(exc, AuthenticationExpired):
        return {"type": "error", "status": 401, "error": SESSION_EXPIRED_MESSAGE}
    if isinstance(exc, RateLimited):
        return {"type": "error", "status": 429, "error": RATE_LIMITED_MESSAGE}
    if isinstance(exc, GmailError):
        return {"type": "error", "status": 503, "error": CONNECTION_ERROR_MESSAGE}
    return {"type": "error", "status": 500, "error": "An unexpected error occurred. Please try again later."}


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

@lru_cache
def get_daily_cache() -> PeriodCache:
    return PeriodCache(config.DATA_DIR / "cache_daily.json", ttl=config.DAILY_CACHE_TTL)


@lru_cache
def get_monthly_cache() -> PeriodCache:
    return PeriodCache(config.DATA_DIR / "cache_monthly.json", ttl=config.MONTHLY_CACHE_TTL)


@lru_cache
def get_tip_store() -> TipStore:
    return TipStore(config.DATA_DIR / "tips.json")


async def get_gmail_client(request: Request, authorization: str = Header(None)) -> GmailClient:
    """Gmail client for the caller's credential.

    A bearer token from the identity provider takes precedence; without one
    the local token.json is used (single-user mode).
    """
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()
        if not _sessions.touch(token):
            raise AuthenticationExpired("Session ended after inactivity")
    else:
        creds = await asyncio.to_thread(load_credentials)
        token = creds.token
    return GmailClient(token, http_client=request.app.state.http)


def get_viewer(authorization: str = Header(None)) -> str:
    """Key for per-viewer state: the session key, or "local" for token.json mode."""
    if authorization and authorization.lower().startswith("bearer "):
        return session_key(authorization[7:].strip())
    return "local"


def get_sync_coordinator(
    client: GmailClient = Depends(get_gmail_client),
    store: TipStore = Depends(get_tip_store),
) -> SyncCoordinator:
    """The coordinator that owns every mirror write for ``store``.

    It pushes through the most recent caller's credential.
    """
    coordinator = _coordinators.get(store.path)
    if coordinator is None:
        coordinator = SyncCoordinator(store, TipMirror(client))
        _coordinators[store.path] = coordinator
    else:
        coordinator.mirror = TipMirror(client)
    return coordinator


async def _load_monthly(year: int, client: GmailClient, cache: PeriodCache, on_progress) -> list:
    return await get_monthly_totals(client, year, cache, on_progress=on_progress)


def _monthly_view(viewer: str) -> PeriodView:
    view = _views.get(viewer)
    if view is None:
        view = _views[viewer] = PeriodView(_load_monthly)
    return view


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class TipCreate(BaseModel):
    amount: float = Field(ge=0)
    date: str  # ISO date or datetime
    note: Optional[str] = None

    @field_validator("date")
    @classmethod
    def _check_iso(cls, value: str) -> str:
        try:
            datetime.fromisoformat(value)
        except ValueError:
            raise ValueError("date must be an ISO 8601 date or datetime")
        return value


class TipRecord(TipCreate):
    id: str
    synced: bool = False

    def to_tip(self) -> Tip:
        return Tip(id=self.id, amount=self.amount, date=self.date, note=self.note, synced=self.synced)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------

@app.get("/api/gmail")
async def daily_transfers(
    day: Optional[date] = Query(None, alias="date"),
    client: GmailClient = Depends(get_gmail_client),
    cache: PeriodCache = Depends(get_daily_cache),
):
    """Transfers received on one day (defaults to today), newest first."""
    day = day or local_today()
    transfers = await get_daily_transfers(client, day, cache)
    return {
        "date": day.isoformat(),
        "transfers": [t.to_dict() for t in transfers],
        "total_amount": sum_amounts(transfers),
        "count": len(transfers),
    }


@app.get("/api/gmail/monthly")
async def monthly_totals(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    client: GmailClient = Depends(get_gmail_client),
    cache: PeriodCache = Depends(get_monthly_cache),
):
    """Per-month transfer totals for a year (defaults to the current year)."""
    year = year or local_today().year
    totals = await get_monthly_totals(client, year, cache)
    return {"year": year, "monthly_totals": [t.to_dict() for t in totals]}


@app.get("/api/gmail/monthly/stream")
async def monthly_totals_stream(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    client: GmailClient = Depends(get_gmail_client),
    cache: PeriodCache = Depends(get_monthly_cache),
    viewer: str = Depends(get_viewer),
):
    """Same as /api/gmail/monthly, streamed as NDJSON progress events then the data.

    If the same viewer asks for another year before this one finishes, this
    stream ends with a "superseded" event instead of the data.
    """
    year = year or local_today().year
    view = _monthly_view(viewer)

    async def _events():
        queue: asyncio.Queue = asyncio.Queue()

        def _progress(current: int, total: int) -> None:
            queue.put_nowait({"type": "progress", "current": current, "total": total})

        async def _run():
            try:
                if await view.select(year, client, cache, _progress):
                    queue.put_nowait({
                        "type": "data",
                        "year": year,
                        "monthly_totals": [t.to_dict() for t in view.data],
                    })
                else:
                    queue.put_nowait({"type": "superseded", "year": year})
            except Exception as e:
                if not isinstance(e, GmailError):
                    logger.exception("Monthly stream failed for %d", year)
                else:
                    logger.warning("Monthly stream failed for %d: %s", year, e)
                queue.put_nowait(_error_event(e))
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(_run())
        while True:
            event = await queue.get()
            if event is None:
                break
            yield json.dumps(event) + "\n"
        await task

    return StreamingResponse(_events(), media_type="application/x-ndjson")


@app.get("/api/summary")
async def summary(
    day: Optional[date] = Query(None, alias="date"),
    goal: Optional[float] = Query(None, gt=0),
    client: GmailClient = Depends(get_gmail_client),
    cache: PeriodCache = Depends(get_daily_cache),
    store: TipStore = Depends(get_tip_store),
):
    """Progress toward the daily goal: transfers plus that day's tips."""
    day = day or local_today()
    transfers = await get_daily_transfers(client, day, cache)
    tips = store.list_by_date(day.isoformat())
    return daily_summary(day, transfers, tips, goal or config.DAILY_GOAL).to_dict()


# ---------------------------------------------------------------------------
# Tip mirror (raw collection in the Gmail draft)
# ---------------------------------------------------------------------------

@app.get("/api/tips/sync")
async def load_mirror(client: GmailClient = Depends(get_gmail_client)):
    tips = await TipMirror(client).load()
    return {"tips": [t.to_dict() for t in tips]}


@app.post("/api/tips/sync")
async def save_mirror(tips: list[TipRecord], coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    try:
        await coordinator.push([t.to_tip() for t in tips])
    except (AuthenticationExpired, RateLimited):
        raise
    except Exception:
        logger.exception("Failed to save tips to mirror")
        raise HTTPException(status_code=500, detail="Failed to sync tips")
    return {"success": True}


# ---------------------------------------------------------------------------
# Local tips
# ---------------------------------------------------------------------------

@app.get("/api/tips")
async def list_tips(
    day: Optional[date] = Query(None, alias="date"),
    store: TipStore = Depends(get_tip_store),
):
    tips = store.list_by_date(day.isoformat()) if day else store.list_all()
    return {"tips": [t.to_dict() for t in tips], "total_amount": sum_amounts(tips)}


@app.get("/api/tips/monthly")
async def tips_monthly(
    year: Optional[int] = Query(None, ge=2000, le=2100),
    store: TipStore = Depends(get_tip_store),
):
    year = year or local_today().year
    totals = monthly_tip_totals(store.list_all(), year)
    return {"year": year, "monthly_totals": [t.to_dict() for t in totals]}


@app.post("/api/tips", status_code=201)
async def add_tip(req: TipCreate, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    """Store a tip locally; the mirror is updated in the background."""
    tip = await coordinator.add_tip(req.amount, req.date, req.note)
    return tip.to_dict()


@app.delete("/api/tips/{tip_id}")
async def delete_tip(tip_id: str, coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    if not await coordinator.delete_tip(tip_id):
        raise HTTPException(status_code=404, detail="Tip not found")
    return {"status": "deleted", "id": tip_id}


@app.post("/api/tips/initialize")
async def initialize_tips(coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    """Pull the mirror and merge it into the local store (remote wins)."""
    tips = await coordinator.initialize()
    return {"tips": [t.to_dict() for t in tips]}


@app.post("/api/tips/push")
async def push_tips(coordinator: SyncCoordinator = Depends(get_sync_coordinator)):
    """Push local tips to the mirror and wait for the result."""
    if coordinator.in_progress:
        return {"status": "in_progress"}
    await coordinator.sync()
    return {"status": "synced", "count": len(coordinator.get_tips())}
