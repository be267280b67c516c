"""Tip sync — reconcile the local tip store with the Gmail draft mirror.

Pull (initialize): remote tips win over local ones with the same id.
Push (sync): the full local collection overwrites the mirror. Only one push
runs at a time; a push requested while another is running is dropped.
Add/delete trigger a push in the background without waiting for it.

Keep one coordinator per TipStore: the mirror draft is found-then-created,
so two writers that do not share the write lock can each create a draft.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Optional

from greenviva.tools.mirror import TipMirror
from greenviva.tools.tips import Tip, TipStore

logger = logging.getLogger(__name__)


def merge_tips(local: list[Tip], remote: list[Tip]) -> list[Tip]:
    """Merge by id. Remote copies replace local ones and count as synced."""
    merged: dict[str, Tip] = {tip.id: tip for tip in local}
    for tip in remote:
        merged[tip.id] = replace(tip, synced=True)
    return list(merged.values())


class SyncCoordinator:
    def __init__(self, store: TipStore, mirror: TipMirror):
        self.store = store
        self.mirror = mirror
        self._in_progress = False
        self._write_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    async def initialize(self) -> list[Tip]:
        """Pull the mirror into the local store."""
        remote = await self.mirror.load()
        merged = merge_tips(self.store.list_all(), remote)
        self.store.update_many([replace(tip, synced=True) for tip in merged])
        logger.info("Tip sync initialized: %d remote, %d after merge", len(remote), len(merged))
        return self.store.list_all()

    async def sync(self) -> None:
        """Push every local tip to the mirror. No-op if a push is already running."""
        if self._in_progress:
            logger.debug("Tip sync already in progress, skipping")
            return
        self._in_progress = True
        try:
            async with self._write_lock:
                tips = self.store.list_all()
                await self.mirror.save(tips)
            for tip in tips:
                if not tip.synced:
                    self.store.mark_synced(tip.id)
            logger.info("Pushed %d tips to mirror", len(tips))
        finally:
            self._in_progress = False

    async def push(self, tips: list[Tip]) -> None:
        """Overwrite the mirror with ``tips`` as given. Waits for any running push."""
        async with self._write_lock:
            await self.mirror.save(tips)
        logger.info("Overwrote mirror with %d tips", len(tips))

    def schedule_sync(self) -> asyncio.Task:
        """Start a push in the background. Failures are logged, not raised."""
        task = asyncio.create_task(self._background_sync())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _background_sync(self) -> None:
        try:
            await self.sync()
        except Exception:
            logger.exception("Background tip sync failed")

    async def drain(self) -> None:
        """Wait for background pushes that are still running."""
        if self._background:
            await asyncio.gather(*list(self._background))

    # ---------------------------------------------------------------------------
    # Local mutations
    # ---------------------------------------------------------------------------

    async def add_tip(self, amount: float, date: str, note: Optional[str] = None) -> Tip:
        tip = self.store.add(amount, date, note)
        self.schedule_sync()
        return tip

    async def delete_tip(self, tip_id: str) -> bool:
        removed = self.store.delete(tip_id)
        self.schedule_sync()
        return removed

    def get_tips(self) -> list[Tip]:
        return self.store.list_all()

    def get_tips_by_date(self, day: str) -> list[Tip]:
        return self.store.list_by_date(day)
