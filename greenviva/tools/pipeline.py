"""Turn a list of Gmail message ids into parsed transfers, in rate-limited batches.

Messages are fetched in fixed-size batches. Inside a batch every fetch runs
concurrently and settles on its own; between batches there is a short pause
to keep under Gmail's per-user quota. Rate limiting is retried per message
with exponential backoff, and if a message is still rate limited after the
last retry the whole run stops with RateLimited.
"""

import asyncio
import dataclasses
import logging
from typing import Awaitable, Callable, Optional

from greenviva import config
from greenviva.tools.gmail import AuthenticationExpired, GmailClient, RateLimited
from greenviva.tools.parsing import Transfer, parse_email_date, parse_transfer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class BatchFetcher:
    def __init__(
        self,
        client: GmailClient,
        batch_size: int = config.FETCH_BATCH_SIZE,
        max_retries: int = config.FETCH_MAX_RETRIES,
        batch_delay: float = config.FETCH_BATCH_DELAY,
        tz: str = config.TIMEZONE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.client = client
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.batch_delay = batch_delay
        self.tz = tz
        self._sleep = sleep

    async def fetch_transfer(self, message_id: str) -> Optional[Transfer]:
        """Fetch and parse one message. None means "not a transfer", not an error."""
        retry = 0
        while True:
            try:
                message = await self.client.get_message(message_id)
                break
            except RateLimited:
                if retry >= self.max_retries:
                    logger.warning("Message %s still rate limited after %d retries", message_id, retry)
                    raise
                delay = 2 ** retry
                logger.info("Rate limited on %s, retrying in %ds", message_id, delay)
                await self._sleep(delay)
                retry += 1

        timestamp = parse_email_date(message.header("date"), self.tz)
        if timestamp is None:
            logger.info("No usable Date header on message %s, skipping", message_id)
            return None

        transfer = parse_transfer(message.body)
        if transfer is None:
            return None
        return dataclasses.replace(transfer, timestamp=timestamp.isoformat())

    async def _run_batch(self, batch: list[str]) -> list[Transfer]:
        results = await asyncio.gather(
            *(self.fetch_transfer(mid) for mid in batch), return_exceptions=True
        )

        transfers = []
        for message_id, result in zip(batch, results):
            if isinstance(result, RateLimited):
                raise RateLimited("Too many requests to Gmail, try again later") from result
            if isinstance(result, AuthenticationExpired):
                raise result
            if isinstance(result, BaseException):
                logger.warning("Failed to process message %s: %s", message_id, result)
                continue
            if result is not None:
                transfers.append(result)
        return transfers

    async def fetch_transfers(
        self,
        message_ids: list[str],
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[Transfer]:
        """Fetch all messages batch by batch. Result order is not guaranteed."""
        total = len(message_ids)
        transfers: list[Transfer] = []

        for start in range(0, total, self.batch_size):
            if start:
                await self._sleep(self.batch_delay)
            batch = message_ids[start:start + self.batch_size]
            transfers.extend(await self._run_batch(batch))
            done = start + len(batch)
            logger.debug("Processed %d/%d messages", done, total)
            if on_progress:
                on_progress(done, total)

        logger.info("Parsed %d transfers from %d messages", len(transfers), total)
        return transfers
