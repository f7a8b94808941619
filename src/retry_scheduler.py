"""Automatic retry of failed order syncs.

A periodic job calls ``RetryScheduler.run``. It pulls a bounded batch of
failed orders, keeps the ones the retry policy allows and whose backoff has
elapsed, and hands them to the orchestrator. A cached connection probe
stops the job early while Zoho is unreachable.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import Settings
from .constants import (
    MAX_BACKOFF_EXPONENT,
    RETRY_MODE_INDEFINITE,
    RETRY_MODE_MANUAL,
)
from .database import Database
from .models import SyncState, SyncStatus, utcnow
from .sync_orchestrator import SyncOrchestrator
from .zoho_client import ZohoBooksClient

logger = logging.getLogger(__name__)

HEALTH_CACHE_KEY = "zoho_connection_healthy"


@dataclass
class RetryRunStats:
    """Counts for one retry run."""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: Optional[str] = None


class RetryScheduler:
    """Applies the retry policy to failed orders."""

    def __init__(
        self,
        settings: Settings,
        db: Database,
        orchestrator: SyncOrchestrator,
        client: Optional[ZohoBooksClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.db = db
        self.orchestrator = orchestrator
        self.client = client
        self._clock = clock

    # =========================================================================
    # POLICY
    # =========================================================================

    def can_retry(self, state: SyncState) -> bool:
        """Whether the policy allows another automatic attempt.

        Only FAILED orders are eligible. ``manual`` never retries,
        ``max_retries`` retries while ``retry_count < retry_max_count`` and
        ``indefinite`` always retries.
        """
        if state.status != SyncStatus.FAILED:
            return False

        mode = self.settings.retry_mode
        if mode == RETRY_MODE_MANUAL:
            return False
        if mode == RETRY_MODE_INDEFINITE:
            return True
        return state.retry_count < self.settings.retry_max_count

    def get_retry_delay(self, retry_count: int) -> int:
        """Backoff in seconds: base * 2^retry_count, capped at the configured maximum."""
        exponent = min(max(retry_count, 0), MAX_BACKOFF_EXPONENT)
        delay = self.settings.retry_backoff_minutes * 60 * (2 ** exponent)
        return min(delay, self.settings.retry_max_delay_minutes * 60)

    def get_next_retry_time(self, state: SyncState) -> Optional[datetime]:
        if state.last_sync_attempt is None:
            return None
        return state.last_sync_attempt + timedelta(seconds=self.get_retry_delay(state.retry_count))

    def should_retry_now(self, state: SyncState) -> bool:
        """Whether the backoff since the last attempt has elapsed."""
        next_retry = self.get_next_retry_time(state)
        if next_retry is None:
            return True
        return self._clock() >= next_retry

    # =========================================================================
    # HEALTH
    # =========================================================================

    async def is_connection_healthy(self) -> bool:
        """Probe Zoho, caching the answer for ``health_check_ttl_seconds``."""
        now = self._clock().timestamp()
        cached = self.db.cache_get(HEALTH_CACHE_KEY, now)
        if cached is not None:
            return bool(cached)

        if self.client is None:
            return True

        healthy = await self.client.test_connection()
        self.db.cache_set(HEALTH_CACHE_KEY, healthy, now + self.settings.health_check_ttl_seconds)
        logger.debug(f"Connection health probe: {'healthy' if healthy else 'unhealthy'}")
        return healthy

    # =========================================================================
    # RUN
    # =========================================================================

    async def run(self, batch_size: Optional[int] = None) -> RetryRunStats:
        """Retry the due failed orders of one batch.

        Args:
            batch_size: Failed orders to examine, defaults to ``retry_batch_size``

        Returns:
            RetryRunStats
        """
        stats = RetryRunStats()

        if self.client is not None and not self.client.is_configured():
            stats.aborted = "not configured"
            logger.debug("Retry run skipped: Zoho connection not configured")
            return stats

        if self.settings.retry_mode == RETRY_MODE_MANUAL:
            stats.aborted = "manual mode"
            logger.debug("Retry run skipped: manual mode enabled")
            return stats

        if not await self.is_connection_healthy():
            stats.aborted = "connection unhealthy"
            logger.info("Retry run skipped: Zoho connection not healthy")
            return stats

        order_ids = self.db.get_failed_order_ids(batch_size or self.settings.retry_batch_size)
        if not order_ids:
            logger.debug("No failed orders to retry")
            return stats

        logger.info(f"Found {len(order_ids)} failed orders to retry")

        for order_id in order_ids:
            state = self.db.get_sync_state(order_id)
            if not self.can_retry(state):
                logger.debug(f"Order {order_id} skipped: retry limit reached ({state.retry_count})")
                stats.skipped += 1
                continue
            if not self.should_retry_now(state):
                logger.debug(f"Order {order_id} skipped: backoff not elapsed")
                stats.skipped += 1
                continue

            order = self.db.get_order(order_id)
            if order is None:
                logger.warning(f"Order {order_id} skipped: order data not stored locally")
                stats.skipped += 1
                continue

            result = await self.orchestrator.retry_sync(order)
            stats.processed += 1
            if result.success:
                stats.succeeded += 1
                logger.info(f"Retry succeeded for order {order_id}: invoice {result.invoice_id}")
            else:
                stats.failed += 1
                logger.warning(f"Retry failed for order {order_id}: {result.error}")

        logger.info(
            f"Retry run completed: {stats.processed} processed, {stats.succeeded} succeeded, "
            f"{stats.skipped} skipped"
        )
        return stats
