"""Lease keeper for the external messaging session.

Each tick either renews the lease (leader) or tries to acquire it
(follower). Becoming leader starts the sender; losing the lease closes it,
so only one instance ever talks to the messaging session.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable

from sqlalchemy.orm import Session

from feed_relay.core.errors import SendError
from feed_relay.core.settings import settings
from feed_relay.db.session import session_scope
from feed_relay.db.time import Clock, utcnow
from feed_relay.models import LeaseStatus
from feed_relay.services.lease import LeaseInfo, LeaseManager
from feed_relay.services.sender import MessageSender, SenderStatus

logger = logging.getLogger(__name__)

# Followers poll with up to this fraction of extra delay so instances spread out.
FOLLOWER_JITTER = 0.2


class SessionKeeper:
    """Hold the session lease and keep the sender in step with it."""

    def __init__(
        self,
        sender: MessageSender,
        *,
        instance_id: str | None = None,
        db_session: Session | None = None,
        clock: Clock = utcnow,
        ttl_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.sender = sender
        self.instance_id = instance_id or settings.instance_id
        self._db_session = db_session
        self._clock = clock
        self.ttl_seconds = settings.lease_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.poll_interval = (
            settings.lease_poll_interval_seconds
            if poll_interval_seconds is None
            else poll_interval_seconds
        )
        self.backoff_max = (
            settings.lease_backoff_max_seconds if backoff_max_seconds is None else backoff_max_seconds
        )
        self._jitter = jitter
        self._leader = False
        self._errors = 0

    def is_leader(self) -> bool:
        """Return this instance's local view of lease ownership."""
        return self._leader

    def next_delay(self) -> float:
        """Seconds until the next tick.

        Leaders renew on the poll interval; followers add a little jitter;
        store errors back off exponentially with jitter.
        """
        if self._errors:
            ceiling = min(self.backoff_max, self.poll_interval * (2 ** (self._errors - 1)))
            return self._jitter(ceiling / 2, ceiling)
        if self._leader:
            return self.poll_interval
        return self.poll_interval * (1 + self._jitter(0.0, FOLLOWER_JITTER))

    async def _start_sender(self, lease: LeaseManager) -> None:
        lease.set_status(self.instance_id, LeaseStatus.CONNECTING)
        try:
            await self.sender.start()
        except SendError as exc:
            lease.set_status(self.instance_id, LeaseStatus.ERROR)
            logger.warning("Messaging session failed to start: %s", exc)
            return
        lease.set_status(self.instance_id, LeaseStatus.CONNECTED)

    async def _step_down(self, reason: str) -> None:
        was_leader = self._leader
        self._leader = False
        if was_leader:
            logger.warning("Instance %s stepped down: %s", self.instance_id, reason)
        await self.sender.close()

    async def tick(self, db: Session | None = None) -> bool:
        """Renew or acquire the lease once.

        Returns:
            True when this instance holds the lease afterwards
        """
        with session_scope(db or self._db_session) as session:
            lease = LeaseManager(session, clock=self._clock)
            if self._leader:
                if not lease.renew(self.instance_id, self.ttl_seconds):
                    self._errors += 1
                    await self._step_down("lease renewal failed")
                    return False
            else:
                result = lease.try_acquire(self.instance_id, self.ttl_seconds)
                if not result.held:
                    self._errors = self._errors + 1 if result.reason == "store error" else 0
                    return False
                self._leader = True
                logger.info("Instance %s acquired the session lease", self.instance_id)

            self._errors = 0
            if self.sender.status is not SenderStatus.READY:
                await self._start_sender(lease)
            return True

    async def take_over(self, db: Session | None = None) -> LeaseInfo:
        """Force this instance to own the lease and start the session.

        Raises:
            LeaseConflictError: If the new owner could not be persisted
        """
        with session_scope(db or self._db_session) as session:
            lease = LeaseManager(session, clock=self._clock)
            lease.force_takeover(self.instance_id, self.ttl_seconds)
            self._leader = True
            self._errors = 0
            # The row reads "conflict" until the restarted session reports connected.
            await self.sender.close()
            await self._start_sender(lease)
            return lease.get_info()

    async def shutdown(self, db: Session | None = None) -> None:
        """Close the session and give the lease up."""
        with session_scope(db or self._db_session) as session:
            if self._leader:
                LeaseManager(session, clock=self._clock).release(self.instance_id)
            await self._step_down("shutdown")
