"""TTL lease over the single external messaging session.

Every write is a conditional UPDATE whose rows-affected count decides the
outcome, so two instances racing for ownership cannot both win. Store errors
and zero-row updates are reported as "not held"; callers back off and retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from feed_relay.core.errors import LeaseConflictError
from feed_relay.core.settings import settings
from feed_relay.db.time import Clock, as_utc, utcnow
from feed_relay.models import LeaseStatus, SessionLease

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeaseResult:
    """Outcome of an acquisition attempt."""

    held: bool
    owner_id: str | None
    expires_at: datetime | None
    reason: str | None = None


@dataclass(frozen=True)
class LeaseInfo:
    """Snapshot of the lease row for status reporting."""

    resource: str
    owner_id: str | None
    expires_at: datetime | None
    status: LeaseStatus
    live: bool


class LeaseManager:
    """Acquire, renew, take over and release the session lease.

    Instances are cheap and bound to one database session; background loops
    build a new one per tick.
    """

    def __init__(
        self,
        db: Session,
        *,
        resource: str | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.db = db
        self.resource = resource or settings.lease_resource
        self._clock = clock

    def _ttl(self, ttl_seconds: float | None) -> timedelta:
        seconds = settings.lease_ttl_seconds if ttl_seconds is None else ttl_seconds
        return timedelta(seconds=max(float(settings.lease_min_ttl_seconds), float(seconds)))

    def _row(self) -> SessionLease | None:
        return self.db.get(SessionLease, self.resource, populate_existing=True)

    def _ensure_row(self) -> None:
        if self._row() is not None:
            return
        try:
            with self.db.begin_nested():
                self.db.add(
                    SessionLease(
                        resource=self.resource,
                        owner_id=None,
                        expires_at=None,
                        status=LeaseStatus.DISCONNECTED,
                        updated_at=self._clock(),
                    )
                )
                self.db.flush()
        except IntegrityError:
            # Another instance created the row first.
            logger.debug("Lease row %s created concurrently", self.resource)

    def _execute(self, stmt) -> int:
        result = self.db.execute(stmt, execution_options={"synchronize_session": False})
        self.db.commit()
        return int(result.rowcount or 0)

    def try_acquire(self, owner_id: str, ttl_seconds: float | None = None) -> LeaseResult:
        """Take the lease if it is free, expired or already ours.

        Args:
            owner_id: Identifier of the calling instance
            ttl_seconds: Lease lifetime; clamped to the configured minimum

        Returns:
            LeaseResult describing who holds the lease afterwards
        """
        now = self._clock()
        expires_at = now + self._ttl(ttl_seconds)
        try:
            self._ensure_row()
            affected = self._execute(
                update(SessionLease)
                .where(
                    SessionLease.resource == self.resource,
                    or_(
                        SessionLease.owner_id.is_(None),
                        SessionLease.expires_at.is_(None),
                        SessionLease.expires_at < now,
                        SessionLease.owner_id == owner_id,
                    ),
                )
                .values(owner_id=owner_id, expires_at=expires_at, updated_at=now)
            )
            if affected == 1:
                return LeaseResult(held=True, owner_id=owner_id, expires_at=expires_at)

            row = self._row()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Lease acquire for %s failed: %s", owner_id, exc)
            return LeaseResult(held=False, owner_id=None, expires_at=None, reason="store error")

        return LeaseResult(
            held=False,
            owner_id=row.owner_id if row else None,
            expires_at=as_utc(row.expires_at) if row else None,
            reason="held by another instance",
        )

    def renew(self, owner_id: str, ttl_seconds: float | None = None) -> bool:
        """Extend the lease only while ``owner_id`` still owns an unexpired lease.

        A lease taken over by another instance is never re-extended by the
        previous holder, and an expired lease has to be acquired again.
        """
        now = self._clock()
        try:
            affected = self._execute(
                update(SessionLease)
                .where(
                    SessionLease.resource == self.resource,
                    SessionLease.owner_id == owner_id,
                    SessionLease.expires_at >= now,
                )
                .values(expires_at=now + self._ttl(ttl_seconds), updated_at=now)
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Lease renew for %s failed: %s", owner_id, exc)
            return False
        if affected != 1:
            logger.info("Lease renew for %s affected no rows; ownership lost", owner_id)
        return affected == 1

    def force_takeover(self, owner_id: str, ttl_seconds: float | None = None) -> bool:
        """Claim the lease regardless of expiry and flag a ``conflict`` status.

        Raises:
            LeaseConflictError: If the update affected no rows or the store failed
        """
        now = self._clock()
        try:
            self._ensure_row()
            previous = self._row()
            previous_owner = previous.owner_id if previous else None
            affected = self._execute(
                update(SessionLease)
                .where(SessionLease.resource == self.resource)
                .values(
                    owner_id=owner_id,
                    expires_at=now + self._ttl(ttl_seconds),
                    status=LeaseStatus.CONFLICT,
                    updated_at=now,
                )
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise LeaseConflictError(f"Lease takeover failed: {exc}") from exc

        if affected != 1:
            raise LeaseConflictError(
                f"Lease takeover for {owner_id} affected {affected} rows; owner not persisted"
            )
        logger.warning(
            "Lease %s forcibly taken over by %s (previous owner: %s)",
            self.resource,
            owner_id,
            previous_owner,
        )
        return True

    def release(self, owner_id: str) -> None:
        """Give the lease up if ``owner_id`` still holds it."""
        try:
            self._execute(
                update(SessionLease)
                .where(
                    SessionLease.resource == self.resource,
                    SessionLease.owner_id == owner_id,
                )
                .values(
                    owner_id=None,
                    expires_at=None,
                    status=LeaseStatus.DISCONNECTED,
                    updated_at=self._clock(),
                )
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Lease release for %s failed: %s", owner_id, exc)

    def set_status(self, owner_id: str, status: LeaseStatus) -> bool:
        """Record the session status, only if ``owner_id`` holds the lease."""
        try:
            affected = self._execute(
                update(SessionLease)
                .where(
                    SessionLease.resource == self.resource,
                    SessionLease.owner_id == owner_id,
                )
                .values(status=status, updated_at=self._clock())
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Lease status update for %s failed: %s", owner_id, exc)
            return False
        return affected == 1

    def is_held_by(self, owner_id: str) -> bool:
        """Return True when ``owner_id`` owns an unexpired lease."""
        info = self.get_info()
        return info.live and info.owner_id == owner_id

    def get_info(self) -> LeaseInfo:
        """Return the current lease state; a missing row reads as free."""
        row = self._row()
        if row is None:
            return LeaseInfo(
                resource=self.resource,
                owner_id=None,
                expires_at=None,
                status=LeaseStatus.DISCONNECTED,
                live=False,
            )
        expires_at = as_utc(row.expires_at)
        live = bool(row.owner_id) and expires_at is not None and expires_at > self._clock()
        return LeaseInfo(
            resource=self.resource,
            owner_id=row.owner_id,
            expires_at=expires_at,
            status=row.status,
            live=live,
        )
