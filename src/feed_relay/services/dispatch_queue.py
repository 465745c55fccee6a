"""Dispatch queue: idempotent enqueue and the entry state machine.

Every transition is a conditional UPDATE on the entry's current status, so
two workers (or two instances around a lease handover) can never both move
the same row. Enqueue is an insert that ignores conflicts on the
(automation, content item, destination) triple; a conflict means the entry
is already queued and counts as success.

    awaiting_approval -> pending        (operator approval)
    pending           -> processing     (claim)
    processing        -> sent           (send succeeded)
    processing        -> failed         (send error; retriable ones count retries)
    processing        -> skipped        (operator paused mid-flight)
    processing        -> pending        (watchdog reclaim)
    failed            -> pending        (retry sweep while retries remain)
    sent              -> delivered/read/played  (receipts)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from feed_relay.core.errors import InvalidTransitionError, SendError
from feed_relay.core.settings import settings
from feed_relay.db.time import Clock, utcnow
from feed_relay.models import (
    Automation,
    ContentItem,
    Destination,
    DispatchEntry,
    DispatchStatus,
    FailureKind,
)
from feed_relay.models.dispatch import UNSENT_STATUSES
from feed_relay.schemas.dispatch import DeliveryOptions
from feed_relay.services.sender import SendReceipt

logger = logging.getLogger(__name__)

PAUSED_BY_USER = "Paused by user"
PAUSED_FOR_ITEM = "Paused for this content item across all destinations"
RECLAIMED_MESSAGE = "Reclaimed after processing timeout"

PAUSABLE_STATUSES = (
    DispatchStatus.AWAITING_APPROVAL,
    DispatchStatus.PENDING,
    DispatchStatus.PROCESSING,
    DispatchStatus.FAILED,
)
OPEN_STATUSES = (
    DispatchStatus.AWAITING_APPROVAL,
    DispatchStatus.PENDING,
    DispatchStatus.PROCESSING,
)
# Receipt status -> (statuses it may advance from, timestamp column)
RECEIPT_TRANSITIONS: dict[DispatchStatus, tuple[tuple[DispatchStatus, ...], str]] = {
    DispatchStatus.DELIVERED: ((DispatchStatus.SENT,), "delivered_at"),
    DispatchStatus.READ: ((DispatchStatus.SENT, DispatchStatus.DELIVERED), "read_at"),
    DispatchStatus.PLAYED: (
        (DispatchStatus.SENT, DispatchStatus.DELIVERED, DispatchStatus.READ),
        "played_at",
    ),
}
_TRIPLE = ["automation_id", "content_item_id", "destination_id"]


@dataclass(frozen=True)
class EnqueueResult:
    """Rows written by one enqueue call."""

    inserted: int
    existing: int


@dataclass(frozen=True)
class QueueLatestResult:
    """Outcome of a manual "queue the latest item" trigger."""

    queued: int
    inserted: int
    revived: int
    skipped: int
    reason: str | None = None


class DispatchQueue:
    """Operations on dispatch entries bound to one database session."""

    def __init__(self, db: Session, clock: Clock = utcnow) -> None:
        self.db = db
        self._clock = clock

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def _insert_ignoring_conflicts(self, rows: list[dict[str, Any]]) -> int:
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(DispatchEntry).values(rows).on_conflict_do_nothing(
                index_elements=_TRIPLE
            )
        elif dialect == "sqlite":
            stmt = sqlite_insert(DispatchEntry).values(rows).on_conflict_do_nothing(
                index_elements=_TRIPLE
            )
        else:
            inserted = 0
            for row in rows:
                try:
                    with self.db.begin_nested():
                        self.db.execute(insert(DispatchEntry).values(**row))
                except IntegrityError:
                    continue
                inserted += 1
            return inserted
        result = self.db.execute(stmt)
        return max(int(result.rowcount or 0), 0)

    def enqueue(
        self,
        automation: Automation,
        items: Sequence[ContentItem],
        destinations: Sequence[Destination] | None = None,
        *,
        commit: bool = True,
    ) -> EnqueueResult:
        """Queue one entry per (item, destination) pair for ``automation``.

        Pairs already queued are left untouched. Entries start as
        ``awaiting_approval`` when the automation requires approval.

        Args:
            automation: Owning automation
            items: Content items, oldest first
            destinations: Destinations to target; defaults to the active ones
            commit: Commit the transaction after inserting

        Returns:
            EnqueueResult with inserted and already-present counts
        """
        targets = automation.active_destinations if destinations is None else destinations
        now = self._clock()
        initial = (
            DispatchStatus.AWAITING_APPROVAL
            if automation.approval_required
            else DispatchStatus.PENDING
        )
        rows = [
            {
                "automation_id": automation.id,
                "content_item_id": item.id,
                "destination_id": destination.id,
                "status": initial,
                "retry_count": 0,
                "options": {},
                "created_at": now,
            }
            for item in items
            for destination in targets
        ]
        if not rows:
            return EnqueueResult(inserted=0, existing=0)

        inserted = self._insert_ignoring_conflicts(rows)
        if commit:
            self.db.commit()
        logger.debug(
            "Automation %s: queued %d entries (%d already present)",
            automation.id,
            inserted,
            len(rows) - inserted,
        )
        return EnqueueResult(inserted=inserted, existing=len(rows) - inserted)

    def queue_latest(
        self,
        automation: Automation,
        item: ContentItem,
        destinations: Sequence[Destination] | None = None,
    ) -> QueueLatestResult:
        """Queue ``item`` for every destination, reviving failed or skipped rows.

        Rows that are pending, in flight or already sent are left alone.
        """
        targets = automation.active_destinations if destinations is None else destinations
        if not targets:
            return QueueLatestResult(0, 0, 0, 0, reason="No active destinations")

        existing = {
            entry.destination_id: entry
            for entry in self.db.scalars(
                select(DispatchEntry).where(
                    DispatchEntry.automation_id == automation.id,
                    DispatchEntry.content_item_id == item.id,
                ).execution_options(populate_existing=True)
            )
        }
        missing = [d for d in targets if d.id not in existing]
        inserted = self.enqueue(automation, [item], missing, commit=False).inserted if missing else 0

        revivable = [
            entry.id
            for entry in existing.values()
            if entry.status in (DispatchStatus.FAILED, DispatchStatus.SKIPPED)
        ]
        revived = 0
        if revivable:
            initial = (
                DispatchStatus.AWAITING_APPROVAL
                if automation.approval_required
                else DispatchStatus.PENDING
            )
            result = self.db.execute(
                update(DispatchEntry)
                .where(
                    DispatchEntry.id.in_(revivable),
                    DispatchEntry.status.in_([DispatchStatus.FAILED, DispatchStatus.SKIPPED]),
                )
                .values(
                    status=initial,
                    retry_count=0,
                    failure_kind=None,
                    error_message=None,
                    processing_started_at=None,
                    claimed_by=None,
                ),
                execution_options={"synchronize_session": False},
            )
            revived = int(result.rowcount or 0)
        self.db.commit()

        skipped = len(targets) - len(missing) - revived
        queued = inserted + revived
        reason = None if queued else "Latest item is already queued or sent for every destination"
        return QueueLatestResult(
            queued=queued, inserted=inserted, revived=revived, skipped=skipped, reason=reason
        )

    def enqueue_manual(
        self,
        text: str,
        destinations: Iterable[Destination],
        options: DeliveryOptions | None = None,
    ) -> list[DispatchEntry]:
        """Queue an ad-hoc message with structured delivery options."""
        stored_options = (options or DeliveryOptions()).model_dump()
        now = self._clock()
        entries = [
            DispatchEntry(
                automation_id=None,
                content_item_id=None,
                destination_id=destination.id,
                status=DispatchStatus.PENDING,
                retry_count=0,
                message_text=text,
                options=stored_options,
                created_at=now,
            )
            for destination in destinations
        ]
        self.db.add_all(entries)
        self.db.commit()
        return entries

    # ------------------------------------------------------------------
    # Worker transitions
    # ------------------------------------------------------------------

    def _transition(self, stmt) -> int:
        result = self.db.execute(stmt, execution_options={"synchronize_session": False})
        self.db.commit()
        return int(result.rowcount or 0)

    def get(self, entry_id: int) -> DispatchEntry | None:
        """Load an entry, refreshing any stale identity-map copy."""
        return self.db.get(DispatchEntry, entry_id, populate_existing=True)

    def claim(self, entry_id: int, worker_id: str) -> bool:
        """Atomically move a pending entry to processing for ``worker_id``."""
        return (
            self._transition(
                update(DispatchEntry)
                .where(
                    DispatchEntry.id == entry_id,
                    DispatchEntry.status == DispatchStatus.PENDING,
                )
                .values(
                    status=DispatchStatus.PROCESSING,
                    processing_started_at=self._clock(),
                    claimed_by=worker_id,
                )
            )
            == 1
        )

    def claim_batch(
        self,
        worker_id: str,
        limit: int,
        *,
        automation_id: int | None = None,
        exclude_automation_ids: Iterable[int] = (),
    ) -> list[DispatchEntry]:
        """Claim up to ``limit`` pending entries, oldest first.

        Args:
            worker_id: Claim token recorded on each row
            limit: Maximum rows to claim
            automation_id: Only claim entries of this automation
            exclude_automation_ids: Automations whose entries are being held

        Returns:
            Claimed entries ordered by destination, then age
        """
        stmt = select(DispatchEntry.id).where(DispatchEntry.status == DispatchStatus.PENDING)
        if automation_id is not None:
            stmt = stmt.where(DispatchEntry.automation_id == automation_id)
        excluded = list(exclude_automation_ids)
        if excluded:
            stmt = stmt.where(
                or_(
                    DispatchEntry.automation_id.is_(None),
                    DispatchEntry.automation_id.not_in(excluded),
                )
            )
        stmt = stmt.order_by(DispatchEntry.created_at, DispatchEntry.id).limit(limit)
        candidate_ids = list(self.db.scalars(stmt))

        claimed = [entry_id for entry_id in candidate_ids if self.claim(entry_id, worker_id)]
        if not claimed:
            return []
        entries = self.db.scalars(
            select(DispatchEntry)
            .where(DispatchEntry.id.in_(claimed))
            .order_by(DispatchEntry.destination_id, DispatchEntry.created_at, DispatchEntry.id)
            .execution_options(populate_existing=True)
        )
        return list(entries)

    def release_claim(self, entry_id: int) -> bool:
        """Return a processing entry to pending without counting a retry."""
        return (
            self._transition(
                update(DispatchEntry)
                .where(
                    DispatchEntry.id == entry_id,
                    DispatchEntry.status == DispatchStatus.PROCESSING,
                )
                .values(
                    status=DispatchStatus.PENDING,
                    processing_started_at=None,
                    claimed_by=None,
                )
            )
            == 1
        )

    def mark_sent(
        self,
        entry_id: int,
        receipt: SendReceipt,
        rendered_content: str | None = None,
    ) -> bool:
        """Record a successful send on a processing entry."""
        affected = self._transition(
            update(DispatchEntry)
            .where(
                DispatchEntry.id == entry_id,
                DispatchEntry.status == DispatchStatus.PROCESSING,
            )
            .values(
                status=DispatchStatus.SENT,
                sent_at=self._clock(),
                external_message_id=receipt.external_message_id,
                rendered_content=rendered_content,
                error_message=None,
                failure_kind=None,
            )
        )
        if affected != 1:
            logger.warning("Entry %s was sent but is no longer processing", entry_id)
        return affected == 1

    def mark_failed(
        self,
        entry_id: int,
        error: SendError,
        max_retries: int | None = None,
        rendered_content: str | None = None,
    ) -> DispatchEntry | None:
        """Record a send failure on a processing entry.

        Retriable errors increment ``retry_count``; once it reaches
        ``max_retries`` the entry stays failed for good. Permanent errors are
        terminal immediately and do not touch the retry count.

        Returns:
            The refreshed entry, or None if it no longer exists
        """
        limit = settings.max_retries if max_retries is None else max_retries
        entry = self.get(entry_id)
        if entry is None:
            return None
        if entry.status is not DispatchStatus.PROCESSING:
            logger.info("Ignoring failure for entry %s in status %s", entry_id, entry.status.value)
            return entry

        values: dict[str, Any] = {
            "status": DispatchStatus.FAILED,
            "processing_started_at": None,
            "claimed_by": None,
        }
        if rendered_content is not None:
            values["rendered_content"] = rendered_content
        if error.retriable:
            attempt = entry.retry_count + 1
            if attempt >= limit:
                message = f"Max retries ({limit}) exceeded: {error}"
            else:
                message = f"Retry {attempt}/{limit}: {error}"
            values.update(
                failure_kind=FailureKind.RETRIABLE,
                retry_count=DispatchEntry.retry_count + 1,
                error_message=message,
            )
        else:
            values.update(failure_kind=FailureKind.PERMANENT, error_message=str(error))

        self._transition(
            update(DispatchEntry)
            .where(
                DispatchEntry.id == entry_id,
                DispatchEntry.status == DispatchStatus.PROCESSING,
            )
            .values(**values)
        )
        return self.get(entry_id)

    # ------------------------------------------------------------------
    # Supervisor sweeps
    # ------------------------------------------------------------------

    def requeue_failed(self, max_retries: int | None = None) -> int:
        """Return retriable failures with retries left to pending."""
        limit = settings.max_retries if max_retries is None else max_retries
        return self._transition(
            update(DispatchEntry)
            .where(
                DispatchEntry.status == DispatchStatus.FAILED,
                DispatchEntry.failure_kind == FailureKind.RETRIABLE,
                DispatchEntry.retry_count < limit,
            )
            .values(status=DispatchStatus.PENDING, processing_started_at=None, claimed_by=None)
        )

    def reclaim_stuck(self, timeout_seconds: float | None = None) -> int:
        """Return entries stuck in processing past the watchdog timeout to pending."""
        timeout = (
            settings.processing_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        cutoff = self._clock() - timedelta(seconds=timeout)
        return self._transition(
            update(DispatchEntry)
            .where(
                DispatchEntry.status == DispatchStatus.PROCESSING,
                or_(
                    DispatchEntry.processing_started_at.is_(None),
                    DispatchEntry.processing_started_at < cutoff,
                ),
            )
            .values(
                status=DispatchStatus.PENDING,
                processing_started_at=None,
                claimed_by=None,
                error_message=RECLAIMED_MESSAGE,
            )
        )

    def count_exhausted(
        self, max_retries: int | None = None, automation_id: int | None = None
    ) -> int:
        """Count entries whose failures are terminal."""
        limit = settings.max_retries if max_retries is None else max_retries
        stmt = select(func.count(DispatchEntry.id)).where(
            DispatchEntry.status == DispatchStatus.FAILED,
            or_(
                DispatchEntry.failure_kind == FailureKind.PERMANENT,
                DispatchEntry.retry_count >= limit,
            ),
        )
        if automation_id is not None:
            stmt = stmt.where(DispatchEntry.automation_id == automation_id)
        return int(self.db.scalar(stmt) or 0)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def _require(self, entry_id: int) -> DispatchEntry:
        entry = self.get(entry_id)
        if entry is None:
            raise LookupError(f"Dispatch entry {entry_id} not found")
        return entry

    def pause_entry(self, entry_id: int, reason: str = PAUSED_BY_USER) -> DispatchEntry:
        """Skip one entry that has not been sent yet.

        Raises:
            LookupError: If the entry does not exist
            InvalidTransitionError: If the entry was already sent or skipped
        """
        entry = self._require(entry_id)
        affected = self._transition(
            update(DispatchEntry)
            .where(
                DispatchEntry.id == entry_id,
                DispatchEntry.status.in_(PAUSABLE_STATUSES),
            )
            .values(
                status=DispatchStatus.SKIPPED,
                error_message=reason,
                processing_started_at=None,
                claimed_by=None,
            )
        )
        if affected != 1:
            raise InvalidTransitionError(f"Cannot pause entry in status {entry.status.value}")
        return self._require(entry_id)

    def pause_content_item(self, content_item_id: int, automation_id: int | None = None) -> int:
        """Skip every unsent entry for a content item across all destinations."""
        stmt = update(DispatchEntry).where(
            DispatchEntry.content_item_id == content_item_id,
            DispatchEntry.status.in_(PAUSABLE_STATUSES),
        )
        if automation_id is not None:
            stmt = stmt.where(DispatchEntry.automation_id == automation_id)
        return self._transition(
            stmt.values(
                status=DispatchStatus.SKIPPED,
                error_message=PAUSED_FOR_ITEM,
                processing_started_at=None,
                claimed_by=None,
            )
        )

    def resume_entry(self, entry_id: int) -> DispatchEntry:
        """Return a skipped or failed entry to the queue with a fresh retry budget.

        Entries of automations that require approval go back to review unless
        they were already approved.
        """
        entry = self._require(entry_id)
        target = DispatchStatus.PENDING
        if (
            entry.automation is not None
            and entry.automation.approval_required
            and entry.approved_at is None
        ):
            target = DispatchStatus.AWAITING_APPROVAL
        affected = self._transition(
            update(DispatchEntry)
            .where(
                DispatchEntry.id == entry_id,
                DispatchEntry.status.in_([DispatchStatus.SKIPPED, DispatchStatus.FAILED]),
            )
            .values(status=target, retry_count=0, failure_kind=None, error_message=None)
        )
        if affected != 1:
            raise InvalidTransitionError(f"Cannot resume entry in status {entry.status.value}")
        return self._require(entry_id)

    def approve(self, entry_id: int, approved_by: str) -> DispatchEntry:
        """Release an entry awaiting approval to the pending queue."""
        entry = self._require(entry_id)
        affected = self._transition(
            update(DispatchEntry)
            .where(
                DispatchEntry.id == entry_id,
                DispatchEntry.status == DispatchStatus.AWAITING_APPROVAL,
            )
            .values(
                status=DispatchStatus.PENDING,
                approved_at=self._clock(),
                approved_by=approved_by,
            )
        )
        if affected != 1:
            raise InvalidTransitionError(f"Cannot approve entry in status {entry.status.value}")
        return self._require(entry_id)

    def approve_all(self, automation_id: int, approved_by: str) -> int:
        """Approve every entry of an automation that awaits review."""
        return self._transition(
            update(DispatchEntry)
            .where(
                DispatchEntry.automation_id == automation_id,
                DispatchEntry.status == DispatchStatus.AWAITING_APPROVAL,
            )
            .values(
                status=DispatchStatus.PENDING,
                approved_at=self._clock(),
                approved_by=approved_by,
            )
        )

    def retry_failed(self, automation_id: int | None = None) -> int:
        """Reset every failed entry to pending with a fresh retry budget."""
        stmt = update(DispatchEntry).where(DispatchEntry.status == DispatchStatus.FAILED)
        if automation_id is not None:
            stmt = stmt.where(DispatchEntry.automation_id == automation_id)
        return self._transition(
            stmt.values(
                status=DispatchStatus.PENDING,
                retry_count=0,
                failure_kind=None,
                error_message=None,
            )
        )

    def skip_open_for_automation(self, automation_id: int, reason: str) -> int:
        """Skip an automation's entries that are queued or in flight."""
        return self._transition(
            update(DispatchEntry)
            .where(
                DispatchEntry.automation_id == automation_id,
                DispatchEntry.status.in_(OPEN_STATUSES),
            )
            .values(
                status=DispatchStatus.SKIPPED,
                error_message=reason,
                processing_started_at=None,
                claimed_by=None,
            )
        )

    def clear(self, status: DispatchStatus, automation_id: int | None = None) -> int:
        """Delete entries of one unsent status.

        Raises:
            InvalidTransitionError: For sent or in-flight statuses
        """
        if status not in UNSENT_STATUSES:
            raise InvalidTransitionError(f"Entries in status {status.value} cannot be cleared")
        stmt = delete(DispatchEntry).where(DispatchEntry.status == status)
        if automation_id is not None:
            stmt = stmt.where(DispatchEntry.automation_id == automation_id)
        return self._transition(stmt)

    def delete_entry(self, entry_id: int) -> None:
        """Delete one entry unless it is being sent right now."""
        entry = self._require(entry_id)
        if entry.status is DispatchStatus.PROCESSING:
            raise InvalidTransitionError("Cannot delete an entry that is being sent")
        self.db.delete(entry)
        self.db.commit()

    def detach_automation(self, automation_id: int) -> tuple[int, int]:
        """Prepare an automation for deletion.

        Unsent entries are deleted; sent history is kept with a NULL
        automation id.

        Returns:
            (deleted, detached) row counts
        """
        deleted = self.db.execute(
            delete(DispatchEntry).where(
                DispatchEntry.automation_id == automation_id,
                DispatchEntry.status.in_([*UNSENT_STATUSES, DispatchStatus.PROCESSING]),
            ),
            execution_options={"synchronize_session": False},
        )
        detached = self.db.execute(
            update(DispatchEntry)
            .where(DispatchEntry.automation_id == automation_id)
            .values(automation_id=None),
            execution_options={"synchronize_session": False},
        )
        return int(deleted.rowcount or 0), int(detached.rowcount or 0)

    def apply_receipt(self, external_message_id: str, status: DispatchStatus) -> bool:
        """Advance a sent entry on a transport receipt; never moves backwards."""
        if status not in RECEIPT_TRANSITIONS:
            raise InvalidTransitionError(f"{status.value} is not a receipt status")
        allowed, column = RECEIPT_TRANSITIONS[status]
        affected = self._transition(
            update(DispatchEntry)
            .where(
                DispatchEntry.external_message_id == external_message_id,
                DispatchEntry.status.in_(allowed),
            )
            .values({"status": status, column: self._clock()})
        )
        return affected > 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def stats(self, automation_id: int | None = None) -> dict[str, int]:
        """Count entries per status, including zero counts."""
        stmt = select(DispatchEntry.status, func.count(DispatchEntry.id)).group_by(
            DispatchEntry.status
        )
        if automation_id is not None:
            stmt = stmt.where(DispatchEntry.automation_id == automation_id)
        counts = {status.value: 0 for status in DispatchStatus}
        for status, count in self.db.execute(stmt):
            counts[DispatchStatus(status).value] = int(count)
        return counts

    def list_entries(
        self,
        *,
        status: DispatchStatus | None = None,
        automation_id: int | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DispatchEntry]:
        """Return entries newest first, optionally filtered."""
        stmt = select(DispatchEntry)
        if status is not None:
            stmt = stmt.where(DispatchEntry.status == status)
        if automation_id is not None:
            stmt = stmt.where(DispatchEntry.automation_id == automation_id)
        stmt = (
            stmt.order_by(DispatchEntry.created_at.desc(), DispatchEntry.id.desc())
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(self.db.scalars(stmt))
