"""Automation lifecycle changes that touch the dispatch queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from feed_relay.core.errors import AutomationNotFoundError, InvalidTransitionError
from feed_relay.models import Automation, AutomationState
from feed_relay.services.dispatch_queue import DispatchQueue

logger = logging.getLogger(__name__)

AUTOMATION_PAUSED = "Automation paused"


@dataclass
class StateChange:
    """Result of a state change request."""

    automation: Automation
    previous: AutomationState
    skipped_entries: int = 0
    warning: str | None = None


def get_automation(db: Session, automation_id: int) -> Automation:
    """Load an automation or raise :class:`AutomationNotFoundError`."""
    automation = db.get(Automation, automation_id)
    if automation is None:
        raise AutomationNotFoundError(f"Automation {automation_id} not found")
    return automation


def activation_problems(automation: Automation) -> list[str]:
    """Return what prevents ``automation`` from being activated."""
    problems = []
    if automation.source_id is None:
        problems.append("Automation has no content source")
    if automation.template_id is None:
        problems.append("Automation has no template")
    if not automation.active_destinations:
        problems.append("Automation has no active destinations")
    return problems


def set_state(db: Session, automation_id: int, state: AutomationState) -> StateChange:
    """Move an automation to ``state``.

    Leaving ``active`` skips the automation's queued and in-flight entries so
    nothing more is sent for it. Activating requires a source, a template and
    at least one active destination; an automation whose source is disabled
    is kept paused and the warning is returned.

    Raises:
        AutomationNotFoundError: If the automation does not exist
        InvalidTransitionError: If activation requirements are not met
    """
    automation = get_automation(db, automation_id)
    previous = automation.state
    change = StateChange(automation=automation, previous=previous)

    if state is AutomationState.ACTIVE:
        problems = activation_problems(automation)
        if problems:
            raise InvalidTransitionError("; ".join(problems))
        if automation.source is not None and not automation.source.active:
            state = AutomationState.PAUSED
            change.warning = "Content source is disabled; automation kept paused"
            logger.warning("Automation %s not activated: source disabled", automation_id)

    automation.state = state
    db.commit()

    if previous is AutomationState.ACTIVE and state is not AutomationState.ACTIVE:
        change.skipped_entries = DispatchQueue(db).skip_open_for_automation(
            automation_id, AUTOMATION_PAUSED
        )
    logger.info(
        "Automation %s: %s -> %s (%d entries skipped)",
        automation_id,
        previous.value,
        state.value,
        change.skipped_entries,
    )
    return change


def delete_automation(db: Session, automation_id: int) -> tuple[int, int]:
    """Delete an automation, its unsent entries, and keep sent history.

    Returns:
        (deleted, detached) entry counts
    """
    automation = get_automation(db, automation_id)
    deleted, detached = DispatchQueue(db).detach_automation(automation_id)
    db.delete(automation)
    db.commit()
    logger.info(
        "Automation %s deleted (%d unsent entries removed, %d kept for audit)",
        automation_id,
        deleted,
        detached,
    )
    return deleted, detached
