"""Dispatch worker: claims pending entries and hands them to the sender.

Only the lease holder sends. The lease is checked when a batch starts and
again right before every send; an entry claimed while the lease slips away
is returned to ``pending`` without counting a retry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from feed_relay.core.errors import PermanentSendError, RetriableSendError, SendError
from feed_relay.core.settings import settings
from feed_relay.db.session import session_scope
from feed_relay.db.time import Clock, utcnow
from feed_relay.models import Automation, DeliveryMode, DispatchEntry, DispatchStatus
from feed_relay.schemas.dispatch import DeliveryOptions
from feed_relay.services.automations import get_automation
from feed_relay.services.dispatch_queue import DispatchQueue
from feed_relay.services.lease import LeaseManager
from feed_relay.services.rate_limit import SendThrottle
from feed_relay.services.rendering import build_context, render_template
from feed_relay.services.schedule_engine import ScheduleEngine
from feed_relay.services.sender import MessageSender, OutboundMessage, SenderStatus
from feed_relay.services.timing import is_within_batch_window, parse_batch_times, resolve_timezone

logger = logging.getLogger(__name__)


@dataclass
class DispatchRun:
    """Counters for one pass of the worker."""

    claimed: int = 0
    sent: int = 0
    failed: int = 0
    released: int = 0
    reason: str | None = None


@dataclass
class SendNowResult:
    """Outcome of a manual "send now" trigger for one automation."""

    sent: int
    queued: int
    skipped: int
    reason: str | None = None


class DispatchWorker:
    """Deliver claimed entries serially, paced by a shared throttle."""

    def __init__(
        self,
        sender: MessageSender,
        throttle: SendThrottle,
        *,
        instance_id: str | None = None,
        db_session: Session | None = None,
        clock: Clock = utcnow,
        batch_size: int | None = None,
        send_timeout_seconds: float | None = None,
        max_retries: int | None = None,
    ) -> None:
        self.sender = sender
        self.throttle = throttle
        self.instance_id = instance_id or settings.instance_id
        self._db_session = db_session
        self._clock = clock
        self.batch_size = settings.dispatch_batch_size if batch_size is None else batch_size
        self.send_timeout = (
            settings.send_timeout_seconds if send_timeout_seconds is None else send_timeout_seconds
        )
        self.max_retries = settings.max_retries if max_retries is None else max_retries

    def _holds_lease(self, db: Session) -> bool:
        return LeaseManager(db, clock=self._clock).is_held_by(self.instance_id)

    def _ready(self, db: Session) -> str | None:
        if not self._holds_lease(db):
            return "Lease not held by this instance"
        if self.sender.status is not SenderStatus.READY:
            return "Messaging session is not connected"
        return None

    def held_automation_ids(self, db: Session, now: datetime | None = None) -> list[int]:
        """Return batched automations whose delivery window is closed right now."""
        now = now or self._clock()
        held = []
        batched = db.scalars(
            select(Automation).where(Automation.delivery_mode == DeliveryMode.BATCHED)
        )
        for automation in batched:
            try:
                batch_times = parse_batch_times(automation.batch_times)
            except ValueError as exc:
                logger.warning("Automation %s has invalid batch times: %s", automation.id, exc)
                batch_times = parse_batch_times(None)
            try:
                tz = resolve_timezone(automation.timezone)
            except ValueError:
                tz = resolve_timezone(settings.default_timezone)
            if not is_within_batch_window(now, batch_times, tz):
                held.append(automation.id)
        return held

    def build_message(self, entry: DispatchEntry) -> OutboundMessage:
        """Render the outbound message for an entry.

        Raises:
            PermanentSendError: If the entry cannot produce a non-empty message
        """
        options = DeliveryOptions.from_column(entry.options)
        if entry.content_item_id is None:
            text = (entry.message_text or "").strip()
        else:
            automation = entry.automation
            if automation is None:
                raise PermanentSendError("Automation no longer exists")
            if automation.template is None:
                raise PermanentSendError("Template not found")
            item = entry.content_item
            if item is None:
                raise PermanentSendError("Content item not found")
            context = build_context(item)
            text = render_template(automation.template.body, context)
            if options.image_url is None and context["image_url"]:
                options = options.model_copy(update={"image_url": context["image_url"]})
        if not text:
            raise PermanentSendError("Template renders empty message")
        return OutboundMessage(text=text, options=options)

    async def _send(self, entry: DispatchEntry, message: OutboundMessage):
        destination = entry.destination
        key = destination.throttle_key
        async with self.throttle.destination_lock(key):
            await self.throttle.acquire(key, destination.min_delay_seconds)
            try:
                return await asyncio.wait_for(
                    self.sender.send(destination, message), timeout=self.send_timeout
                )
            except asyncio.TimeoutError as exc:
                raise RetriableSendError(
                    f"Send timed out after {self.send_timeout:g}s"
                ) from exc

    async def _deliver(
        self, db: Session, queue: DispatchQueue, entries: list[DispatchEntry]
    ) -> DispatchRun:
        run = DispatchRun(claimed=len(entries))
        for entry in entries:
            if not self._holds_lease(db):
                queue.release_claim(entry.id)
                run.released += 1
                continue

            rendered: str | None = None
            try:
                if not entry.destination.active:
                    raise PermanentSendError("Destination is disabled")
                message = self.build_message(entry)
                rendered = message.text
                receipt = await self._send(entry, message)
            except SendError as exc:
                failed = queue.mark_failed(entry.id, exc, self.max_retries, rendered)
                run.failed += 1
                logger.warning(
                    "Entry %s to destination %s failed: %s",
                    entry.id,
                    entry.destination_id,
                    failed.error_message if failed is not None else exc,
                )
                continue

            if queue.mark_sent(entry.id, receipt, rendered):
                run.sent += 1
                if entry.automation_id is not None:
                    automation = db.get(Automation, entry.automation_id)
                    if automation is not None:
                        automation.last_dispatched_at = self._clock()
                        db.commit()
        return run

    async def run_once(self, db: Session | None = None) -> DispatchRun:
        """Claim and deliver one batch of pending entries.

        Entries of batched automations wait until their window opens.
        """
        with session_scope(db or self._db_session) as session:
            reason = self._ready(session)
            if reason is not None:
                return DispatchRun(reason=reason)
            queue = DispatchQueue(session, clock=self._clock)
            entries = queue.claim_batch(
                self.instance_id,
                self.batch_size,
                exclude_automation_ids=self.held_automation_ids(session),
            )
            if not entries:
                return DispatchRun()
            run = await self._deliver(session, queue, entries)
            logger.info(
                "Dispatch pass: %d claimed, %d sent, %d failed, %d released",
                run.claimed,
                run.sent,
                run.failed,
                run.released,
            )
            return run

    async def tick(self) -> None:
        """Periodic entry point used by the runtime."""
        await self.run_once()

    def _pending_count(self, db: Session, automation_id: int) -> int:
        stmt = select(func.count(DispatchEntry.id)).where(
            DispatchEntry.automation_id == automation_id,
            DispatchEntry.status.in_([DispatchStatus.PENDING, DispatchStatus.AWAITING_APPROVAL]),
        )
        return int(db.scalar(stmt) or 0)

    async def dispatch_automation(
        self, automation_id: int, db: Session | None = None
    ) -> SendNowResult:
        """Enqueue new items for one automation and send its entries right away.

        Batch windows are ignored. Without the lease or a connected session the
        entries stay queued and the result says why.

        Raises:
            AutomationNotFoundError: If the automation does not exist
        """
        with session_scope(db or self._db_session) as session:
            automation = get_automation(session, automation_id)
            evaluation = ScheduleEngine(session, clock=self._clock).evaluate(
                automation, force=True
            )
            reason = self._ready(session)
            if reason is not None:
                return SendNowResult(
                    sent=0,
                    queued=self._pending_count(session, automation_id),
                    skipped=0,
                    reason=reason,
                )

            queue = DispatchQueue(session, clock=self._clock)
            entries = queue.claim_batch(
                self.instance_id, self.batch_size, automation_id=automation_id
            )
            run = await self._deliver(session, queue, entries)
            queued = self._pending_count(session, automation_id)
            if run.sent or run.failed:
                reason = None
            elif not entries:
                reason = evaluation.reason or "Nothing queued for this automation"
            else:
                reason = "Lease lost before sending"
            return SendNowResult(
                sent=run.sent,
                queued=queued,
                skipped=run.failed,
                reason=reason,
            )
