"""Retry sweep and stuck-row watchdog."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from feed_relay.core.settings import settings
from feed_relay.db.session import session_scope
from feed_relay.db.time import Clock, utcnow
from feed_relay.services.dispatch_queue import DispatchQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    """Rows touched by one supervisor sweep."""

    requeued: int
    reclaimed: int
    exhausted: int


class RetrySupervisor:
    """Return retriable failures and stuck rows to ``pending``.

    The sweep is safe to run on any instance: both transitions are
    conditional updates, so they never race with a worker's claim.
    """

    def __init__(
        self,
        *,
        db_session: Session | None = None,
        clock: Clock = utcnow,
        max_retries: int | None = None,
        processing_timeout_seconds: float | None = None,
    ) -> None:
        self._db_session = db_session
        self._clock = clock
        self.max_retries = settings.max_retries if max_retries is None else max_retries
        self.processing_timeout = (
            settings.processing_timeout_seconds
            if processing_timeout_seconds is None
            else processing_timeout_seconds
        )

    def sweep(self, db: Session | None = None) -> SweepResult:
        """Run one retry pass and one watchdog pass."""
        with session_scope(db or self._db_session) as session:
            queue = DispatchQueue(session, clock=self._clock)
            reclaimed = queue.reclaim_stuck(self.processing_timeout)
            requeued = queue.requeue_failed(self.max_retries)
            exhausted = queue.count_exhausted(self.max_retries)

        if reclaimed:
            logger.warning("Reclaimed %d entries stuck in processing", reclaimed)
        if requeued:
            logger.info("Requeued %d failed entries for retry", requeued)
        return SweepResult(requeued=requeued, reclaimed=reclaimed, exhausted=exhausted)

    async def tick(self) -> None:
        """Periodic entry point used by the runtime."""
        self.sweep()
