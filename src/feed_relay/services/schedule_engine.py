"""Schedule evaluation: decide when automations run and what they enqueue.

An automation without a cron expression runs whenever its source has items
newer than its cursor. Cron automations run when ``now`` reaches their next
fire time. Batched automations enqueue the same way; the dispatch worker
holds their entries until a configured time-of-day window opens.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from feed_relay.core.errors import FeedRelayError
from feed_relay.core.settings import settings
from feed_relay.db.time import Clock, as_utc, utcnow
from feed_relay.models import Automation, AutomationState, DeliveryMode
from feed_relay.services.content_store import ContentStore
from feed_relay.services.dispatch_queue import DispatchQueue, QueueLatestResult
from feed_relay.services.timing import (
    next_batch_window,
    next_cron_fire,
    normalize_delivery_mode,
    parse_batch_times,
    resolve_timezone,
)

logger = logging.getLogger(__name__)

NO_NEW_ITEMS = "No new items"


def is_running(state: AutomationState | str) -> bool:
    """Return True when an automation in ``state`` should be evaluated."""
    return AutomationState(state) is AutomationState.ACTIVE


@dataclass
class EvaluationResult:
    """What one evaluation did for one automation."""

    automation_id: int
    due: bool
    enqueued: int = 0
    items: int = 0
    cursor: datetime | None = None
    reason: str | None = None


class ScheduleEngine:
    """Evaluate automations against the content store and enqueue entries."""

    def __init__(
        self,
        db: Session,
        *,
        clock: Clock = utcnow,
        max_items: int | None = None,
    ) -> None:
        self.db = db
        self._clock = clock
        self.max_items = settings.max_items_per_tick if max_items is None else max_items
        self.store = ContentStore(db, clock=clock)
        self.queue = DispatchQueue(db, clock=clock)

    def timezone_for(self, automation: Automation) -> Any:
        """Resolve the automation's zone, falling back to the default."""
        try:
            return resolve_timezone(automation.timezone)
        except ValueError:
            logger.warning(
                "Automation %s has unknown timezone %r; using %s",
                automation.id,
                automation.timezone,
                settings.default_timezone,
            )
            return resolve_timezone(settings.default_timezone)

    def active_automations(self) -> list[Automation]:
        """Return automations whose state is active."""
        stmt = (
            select(Automation)
            .where(Automation.state == AutomationState.ACTIVE)
            .order_by(Automation.id)
        )
        return list(self.db.scalars(stmt))

    def _schedule_next_run(self, automation: Automation, now: datetime) -> None:
        tz = self.timezone_for(automation)
        if automation.cron_expression:
            automation.next_run_at = next_cron_fire(automation.cron_expression, tz, now)
        elif normalize_delivery_mode(automation.delivery_mode) is DeliveryMode.BATCHED:
            batch_times = parse_batch_times(automation.batch_times)
            automation.next_run_at = next_batch_window(now, batch_times, tz)
        else:
            automation.next_run_at = None

    def _advance_cursor(self, automation: Automation, newest: datetime) -> datetime | None:
        """Move the stored cursor up to ``newest`` and return the stored value.

        The comparison happens in the UPDATE itself, so an evaluation that
        finishes late cannot overwrite a newer cursor written by another one.
        """
        self.db.execute(
            update(Automation)
            .where(
                Automation.id == automation.id,
                or_(
                    Automation.last_queued_at.is_(None),
                    Automation.last_queued_at < newest,
                ),
            )
            .values(last_queued_at=newest),
            execution_options={"synchronize_session": False},
        )
        stored = as_utc(
            self.db.scalar(
                select(Automation.last_queued_at).where(Automation.id == automation.id)
            )
        )
        set_committed_value(automation, "last_queued_at", stored)
        return stored

    def blocking_reason(
        self,
        automation: Automation,
        now: datetime | None = None,
        *,
        force: bool = False,
    ) -> str | None:
        """Return why ``automation`` is not due right now, or None when it is.

        ``force`` skips the cron timing check but nothing else.
        """
        now = now or self._clock()
        if not is_running(automation.state):
            return "Automation is not active"
        source = automation.source
        if source is None:
            return "Automation has no content source"
        if not source.active:
            return "Content source is disabled"
        if source.consecutive_failures > 0:
            return "Latest fetch of the content source failed"
        if not automation.active_destinations:
            return "No active destinations"

        cron_due = False
        if automation.cron_expression and not force:
            next_run = as_utc(automation.next_run_at)
            if next_run is None:
                self._schedule_next_run(automation, now)
                self.db.commit()
                return "Next cron run has just been scheduled"
            if now < next_run:
                return "Next cron run is in the future"
            cron_due = True

        if automation.last_queued_at is not None and not self.store.has_items_since(
            source.id, automation.last_queued_at
        ):
            # An empty fire still uses up this cron slot.
            if cron_due:
                self._schedule_next_run(automation, now)
                self.db.commit()
            return NO_NEW_ITEMS
        return None

    def is_due(self, automation: Automation, now: datetime | None = None) -> bool:
        """Return True when ``automation`` should be evaluated now."""
        return self.blocking_reason(automation, now) is None

    def evaluate(self, automation: Automation, *, force: bool = False) -> EvaluationResult:
        """Enqueue newly eligible items for one automation.

        The cursor moves only after the enqueue committed and never moves
        backwards. A brand-new automation (no cursor) only gets the single
        most recent item.

        Args:
            automation: Automation to evaluate
            force: Ignore cron timing (manual trigger)

        Returns:
            EvaluationResult describing what was queued
        """
        now = self._clock()
        reason = self.blocking_reason(automation, now, force=force)
        cursor = as_utc(automation.last_queued_at)
        if reason is not None:
            return EvaluationResult(automation.id, due=False, cursor=cursor, reason=reason)

        source_id = automation.source_id
        if cursor is None:
            latest = self.store.latest_item(source_id)
            items = [latest] if latest is not None else []
        else:
            items = self.store.items_since(source_id, automation.last_queued_at, self.max_items)
        if not items:
            if automation.cron_expression and not force:
                self._schedule_next_run(automation, now)
                self.db.commit()
            return EvaluationResult(automation.id, due=True, cursor=cursor, reason=NO_NEW_ITEMS)

        try:
            enqueued = self.queue.enqueue(automation, items)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Automation %s: enqueue failed; cursor left unchanged", automation.id)
            return EvaluationResult(
                automation.id, due=True, cursor=cursor, reason="Enqueue failed"
            )

        cursor = self._advance_cursor(automation, as_utc(items[-1].created_at))
        try:
            self._schedule_next_run(automation, now)
        except ValueError as exc:
            logger.warning("Automation %s: cannot schedule next run: %s", automation.id, exc)
        self.db.commit()

        logger.info(
            "Automation %s: %d new items, %d entries queued",
            automation.id,
            len(items),
            enqueued.inserted,
        )
        return EvaluationResult(
            automation.id,
            due=True,
            enqueued=enqueued.inserted,
            items=len(items),
            cursor=cursor,
        )

    def evaluate_all(self, *, force: bool = False) -> list[EvaluationResult]:
        """Evaluate every active automation; one failure never stops the rest."""
        results: list[EvaluationResult] = []
        for automation in self.active_automations():
            try:
                results.append(self.evaluate(automation, force=force))
            except (FeedRelayError, SQLAlchemyError, ValueError) as exc:
                self.db.rollback()
                logger.error(
                    "Automation %s evaluation failed: %s", automation.id, exc, exc_info=True
                )
                results.append(
                    EvaluationResult(automation.id, due=False, reason=f"Evaluation failed: {exc}")
                )
        return results

    def queue_latest(self, automation: Automation) -> QueueLatestResult:
        """Queue the source's most recent item for every active destination.

        Failed or skipped entries for that item are revived; the cursor moves
        forward to the item when it is newer.
        """
        if automation.source_id is None:
            return QueueLatestResult(0, 0, 0, 0, reason="Automation has no content source")
        latest = self.store.latest_item(automation.source_id)
        if latest is None:
            return QueueLatestResult(0, 0, 0, 0, reason="No content items for this source")

        result = self.queue.queue_latest(automation, latest)
        self._advance_cursor(automation, as_utc(latest.created_at))
        self.db.commit()
        return result
