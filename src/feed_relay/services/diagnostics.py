"""Per-automation diagnostics for operators."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from feed_relay.core.settings import settings
from feed_relay.db.time import Clock, as_utc, utcnow
from feed_relay.models import LeaseStatus
from feed_relay.services.automations import get_automation
from feed_relay.services.content_store import ContentStore
from feed_relay.services.dispatch_queue import DispatchQueue
from feed_relay.services.lease import LeaseManager
from feed_relay.services.rendering import build_context, render_template
from feed_relay.services.schedule_engine import is_running


@dataclass
class AutomationDiagnostics:
    """Everything needed to explain why an automation is or is not sending."""

    automation_id: int
    state: str
    running: bool
    session_connected: bool
    lease_owner: str | None
    template_renders: bool
    preview: str | None
    active_destinations: int
    counts: dict[str, int]
    exhausted: int
    last_queued_at: datetime | None
    next_run_at: datetime | None
    blocking_reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def can_send(self) -> bool:
        return not self.blocking_reasons


def diagnose(db: Session, automation_id: int, *, clock: Clock = utcnow) -> AutomationDiagnostics:
    """Collect diagnostics for one automation.

    Blocking reasons explain why nothing will be sent; warnings point at
    conditions that are not fatal on their own.

    Raises:
        AutomationNotFoundError: If the automation does not exist
    """
    automation = get_automation(db, automation_id)
    blocking: list[str] = []
    warnings: list[str] = []

    running = is_running(automation.state)
    if not running:
        blocking.append("Automation is not active")

    source = automation.source
    store = ContentStore(db, clock=clock)
    latest = None
    if source is None:
        blocking.append("Automation has no content source")
    else:
        if not source.active:
            blocking.append("Content source is disabled")
        if source.consecutive_failures > 0:
            warnings.append(
                f"Latest fetch of the content source failed "
                f"({source.consecutive_failures} in a row): {source.last_error or 'unknown error'}"
            )
        latest = store.latest_item(source.id)
        if latest is None:
            warnings.append("No content items found for the automation's source")

    lease = LeaseManager(db, resource=settings.lease_resource, clock=clock).get_info()
    session_connected = lease.live and lease.status is LeaseStatus.CONNECTED
    if not session_connected:
        blocking.append("Messaging session is not connected")

    template_renders = False
    preview = None
    if automation.template is None:
        blocking.append("Template not found")
    else:
        context = build_context(latest) if latest is not None else {}
        preview = render_template(automation.template.body, context) or None
        template_renders = preview is not None
        if not template_renders and latest is None:
            # Nothing to render against yet.
            warnings.append("Template renders empty message without content items")
        elif not template_renders:
            blocking.append("Template renders empty message")

    active_destinations = len(automation.active_destinations)
    if active_destinations == 0:
        blocking.append("No active destinations")

    queue = DispatchQueue(db, clock=clock)
    counts = queue.stats(automation_id)
    if counts["pending"] == 0 and counts["awaiting_approval"] == 0:
        warnings.append("No pending entries")
    if counts["awaiting_approval"]:
        warnings.append(f"{counts['awaiting_approval']} entries await approval")
    exhausted = queue.count_exhausted(automation_id=automation_id)
    if exhausted:
        warnings.append(f"{exhausted} entries exhausted their retries")

    return AutomationDiagnostics(
        automation_id=automation.id,
        state=automation.state.value,
        running=running,
        session_connected=session_connected,
        lease_owner=lease.owner_id if lease.live else None,
        template_renders=template_renders,
        preview=preview,
        active_destinations=active_destinations,
        counts=counts,
        exhausted=exhausted,
        last_queued_at=as_utc(automation.last_queued_at),
        next_run_at=as_utc(automation.next_run_at),
        blocking_reasons=blocking,
        warnings=warnings,
    )
