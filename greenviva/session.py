"""Session inactivity timeout.

A session ends after SESSION_IDLE_TIMEOUT seconds without a request. Each
session has its own timer on the event loop; any request resets it. Ended
sessions are rejected until the user signs in again with a fresh token.
"""

import asyncio
import hashlib
import logging
import time
from typing import Callable, Optional

from greenviva import config

logger = logging.getLogger(__name__)

ENDED_RETENTION = 3600.0  # Google access tokens live for an hour


class InactivityTimer:
    def __init__(self, timeout: float, on_expire: Callable[[], None]):
        self.timeout = timeout
        self._on_expire = on_expire
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout, self._fire)

    def touch(self) -> None:
        """Activity seen: restart the countdown."""
        self.start()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._on_expire()


def session_key(token: str) -> str:
    # Sessions are tracked by token hash only
    return hashlib.sha256(token.encode()).hexdigest()[:16]


class SessionTracker:
    """Inactivity timers per bearer token.

    Ended sessions are remembered for ``retention`` seconds, long enough to
    outlive the access token itself; after that the token would be rejected
    by Gmail anyway. ``on_end`` receives the session key so callers can drop
    per-session state.
    """

    def __init__(
        self,
        timeout: float = config.SESSION_IDLE_TIMEOUT,
        on_end: Optional[Callable[[str], None]] = None,
        retention: float = ENDED_RETENTION,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.retention = retention
        self._on_end = on_end
        self._clock = clock
        self._timers: dict[str, InactivityTimer] = {}
        self._ended: dict[str, float] = {}  # key -> when it ended

    def is_ended(self, token: str) -> bool:
        self._prune()
        return session_key(token) in self._ended

    def touch(self, token: str) -> bool:
        """Record activity. Returns False if the session already timed out."""
        self._prune()
        key = session_key(token)
        if key in self._ended:
            return False
        timer = self._timers.get(key)
        if timer is None:
            timer = InactivityTimer(self.timeout, lambda: self._expire(key))
            self._timers[key] = timer
            logger.info("Session %s started", key)
        timer.touch()
        return True

    def end(self, token: str) -> None:
        self._expire(session_key(token))

    def _expire(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer:
            timer.cancel()
        self._ended[key] = self._clock()
        logger.info("Session %s ended after inactivity", key)
        if self._on_end:
            self._on_end(key)

    def _prune(self) -> None:
        cutoff = self._clock() - self.retention
        for key in [k for k, ended_at in self._ended.items() if ended_at < cutoff]:
            del self._ended[key]

    def close(self) -> None:
        """Cancel every pending timer (app shutdown)."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
