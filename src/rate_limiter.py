"""Fixed-window rate limiter for outbound Zoho Books API calls.

Zoho allows 100 requests per minute per organization. Requests are counted
in per-minute windows keyed by floor(now / 60). The counter lives in the
SQLite database so every process sharing the database file shares the
same budget.
"""

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable

from .constants import RATE_LIMIT_PER_MINUTE, RATE_WINDOW_SECONDS
from .database import Database

logger = logging.getLogger(__name__)


class RateLimiter:
    """Per-minute request counter backed by the shared database."""

    def __init__(
        self,
        db: Database,
        limit: int = RATE_LIMIT_PER_MINUTE,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the rate limiter.

        Args:
            db: Database holding the window counters
            limit: Maximum requests per window
            clock: Returns the current epoch time in seconds
            sleep: Coroutine used to wait between availability checks
        """
        self.db = db
        self.limit = limit
        self._clock = clock
        self._sleep = sleep

    def _window_key(self) -> int:
        return math.floor(self._clock() / RATE_WINDOW_SECONDS)

    def get_request_count(self) -> int:
        """Requests recorded in the current window."""
        window = self.db.get_rate_window(self._window_key(), self._clock())
        return window[0] if window else 0

    def can_make_request(self) -> bool:
        return self.get_request_count() < self.limit

    def get_remaining_requests(self) -> int:
        return max(0, self.limit - self.get_request_count())

    def record_request(self) -> int:
        """Count a request against the current window.

        The window expires 60 seconds after its first request.

        Returns:
            Requests recorded in the window so far
        """
        now = self._clock()
        count = self.db.increment_rate_window(
            self._window_key(),
            expires_at=now + RATE_WINDOW_SECONDS,
            now=now,
        )
        if count >= self.limit:
            logger.debug(f"Rate limit window full ({count}/{self.limit})")
        return count

    async def wait_for_availability(
        self,
        max_wait_seconds: float = 60,
        poll_interval: float = 1.0,
    ) -> bool:
        """Wait until a request can be made.

        Checks once per ``poll_interval`` without blocking the event loop.

        Args:
            max_wait_seconds: Give up after this many seconds
            poll_interval: Seconds between checks

        Returns:
            True if capacity is available, False on timeout
        """
        start = self._clock()
        while not self.can_make_request():
            if self._clock() - start >= max_wait_seconds:
                return False
            await self._sleep(poll_interval)
        return True

    def seconds_until_reset(self) -> int:
        """Seconds until the current window expires, 0 if there is none."""
        now = self._clock()
        window = self.db.get_rate_window(self._window_key(), now)
        if not window:
            return 0
        return max(0, int(math.ceil(window[1] - now)))

    def reset(self) -> None:
        """Forget the current window's count."""
        now = self._clock()
        self.db.delete_rate_window(self._window_key())
        logger.debug(f"Rate limit window reset at {now}")
