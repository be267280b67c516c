"""Local tip store for manually entered cash tips.

Persistence: data/tips.json (local) or /app/data/tips.json (Docker), keyed by
tip id. A day -> ids index is kept in memory so "tips on day D" does not scan
every record.
"""

import json
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, asdict, replace
from pathlib import Path
from typing import Optional

from greenviva import config
from greenviva.tools.aggregate import day_label, local_datetime

logger = logging.getLogger(__name__)

_TIPS_FILE = config.DATA_DIR / "tips.json"


@dataclass
class Tip:
    """A cash tip. ``id`` is the only identity used for merging."""
    id: str
    amount: float
    date: str  # ISO datetime
    note: Optional[str] = None
    synced: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Tip":
        return cls(
            id=str(data["id"]),
            amount=float(data["amount"]),
            date=str(data["date"]),
            note=data.get("note") or None,
            synced=bool(data.get("synced", False)),
        )


def tip_day(tip: Tip, tz: str = config.TIMEZONE) -> str:
    """Local calendar day of a tip, falling back to the date string's prefix."""
    moment = local_datetime(tip.date, tz)
    return day_label(moment.date()) if moment else tip.date[:10]


class TipStore:
    def __init__(self, path: Path = _TIPS_FILE, tz: str = config.TIMEZONE):
        self.path = Path(path)
        self.tz = tz
        self._tips: dict[str, Tip] = {}
        self._by_day: dict[str, set[str]] = defaultdict(set)
        self._load()

    # ---------------------------------------------------------------------------
    # File I/O (atomic writes)
    # ---------------------------------------------------------------------------

    def _load(self) -> None:
        try:
            if self.path.exists():
                raw = json.loads(self.path.read_text())
                for data in raw.values():
                    self._index(Tip.from_dict(data))
                logger.info("Loaded %d tips from %s", len(self._tips), self.path)
        except Exception as e:
            logger.warning("Failed to load tips from %s: %s", self.path, e)

    def _save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            data = {tip_id: tip.to_dict() for tip_id, tip in self._tips.items()}
            tmp.write_text(json.dumps(data, indent=2))
            tmp.replace(self.path)
        except Exception as e:
            logger.error("Failed to save tips to %s: %s", self.path, e)

    def _index(self, tip: Tip) -> None:
        self._unindex(tip.id)
        self._tips[tip.id] = tip
        self._by_day[tip_day(tip, self.tz)].add(tip.id)

    def _unindex(self, tip_id: str) -> Optional[Tip]:
        old = self._tips.pop(tip_id, None)
        if old is not None:
            day = tip_day(old, self.tz)
            self._by_day[day].discard(tip_id)
            if not self._by_day[day]:
                del self._by_day[day]
        return old

    # ---------------------------------------------------------------------------
    # Operations
    # ---------------------------------------------------------------------------

    def add(self, amount: float, date: str, note: Optional[str] = None) -> Tip:
        if amount < 0:
            raise ValueError("Tip amount must not be negative")
        tip = Tip(id=str(uuid.uuid4()), amount=round(float(amount), 2), date=date, note=note or None)
        self._index(tip)
        self._save()
        logger.info("Added tip %s (%.2f on %s)", tip.id, tip.amount, tip.date)
        return tip

    def get(self, tip_id: str) -> Optional[Tip]:
        return self._tips.get(tip_id)

    def update(self, tip: Tip) -> None:
        """Insert or fully replace the tip with this id."""
        if tip.amount < 0:
            raise ValueError("Tip amount must not be negative")
        self._index(replace(tip))
        self._save()

    def update_many(self, tips: list[Tip]) -> None:
        for tip in tips:
            self._index(replace(tip))
        self._save()

    def delete(self, tip_id: str) -> bool:
        removed = self._unindex(tip_id) is not None
        if removed:
            self._save()
            logger.info("Deleted tip %s", tip_id)
        return removed

    def list_all(self) -> list[Tip]:
        """All tips, oldest first."""
        return sorted(self._tips.values(), key=lambda t: (t.date, t.id))

    def list_by_date(self, day: str) -> list[Tip]:
        """Tips on a local calendar day (YYYY-MM-DD)."""
        ids = self._by_day.get(day, set())
        return sorted((self._tips[i] for i in ids), key=lambda t: (t.date, t.id))

    def list_unsynced(self) -> list[Tip]:
        return [t for t in self.list_all() if not t.synced]

    def mark_synced(self, tip_id: str) -> None:
        tip = self._tips.get(tip_id)
        if tip and not tip.synced:
            tip.synced = True
            self._save()
