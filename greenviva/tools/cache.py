"""Computed period results stored on disk with a fixed TTL.

Persistence: one JSON file per cache instance, in-memory dict + atomic JSON
file writes. Expired entries are evicted lazily on lookup, swept on every
set(), or dropped in bulk with clear_expired().
"""

import json
import logging
import time
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodCache:
    def __init__(self, path: Path, ttl: float, clock: Callable[[], float] = time.time):
        self.path = Path(path)
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, dict] = self._load()

    # ---------------------------------------------------------------------------
    # File I/O
    # ---------------------------------------------------------------------------

    def _load(self) -> dict[str, dict]:
        try:
            if self.path.exists():
                return json.loads(self.path.read_text())
        except Exception as e:
            logger.warning("Failed to load cache %s: %s", self.path, e)
        return {}

    def _save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps(self._entries, indent=2, default=str))
            tmp.replace(self.path)
        except Exception as e:
            logger.warning("Failed to save cache %s: %s", self.path, e)

    # ---------------------------------------------------------------------------
    # Operations
    # ---------------------------------------------------------------------------

    def get(self, key: str) -> Optional[list]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry["expires_at"] < self._clock():
            logger.debug("Cache entry %s expired", key)
            self.delete(key)
            return None
        return entry["payload"]

    def set(self, key: str, payload: list) -> None:
        """Store ``payload`` under ``key``; expired entries are swept in the same write."""
        self._evict_expired()
        now = self._clock()
        self._entries[key] = {
            "payload": payload,
            "created_at": now,
            "expires_at": now + self.ttl,
        }
        self._save()

    def delete(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            self._save()

    def keys(self) -> list[str]:
        return list(self._entries)

    def clear_expired(self) -> int:
        """Drop every expired entry, oldest expiry first. Returns how many were removed."""
        removed = self._evict_expired()
        if removed:
            self._save()
        return removed

    def _evict_expired(self) -> int:
        now = self._clock()
        expired = sorted(
            (entry["expires_at"], key)
            for key, entry in self._entries.items()
            if entry["expires_at"] < now
        )
        for _, key in expired:
            del self._entries[key]
        if expired:
            logger.info("Evicted %d expired cache entries from %s", len(expired), self.path.name)
        return len(expired)
