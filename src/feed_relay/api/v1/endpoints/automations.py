"""Automation triggers, lifecycle and diagnostics endpoints."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, HTTPException, Response, status
from sqlalchemy import select

from feed_relay.core.errors import AutomationNotFoundError, InvalidTransitionError
from feed_relay.models import Automation
from feed_relay.schemas.automation import (
    AutomationDeliveryUpdate,
    AutomationResponse,
    AutomationStateUpdate,
    DiagnosticsResponse,
    DispatchAllResponse,
    EvaluationResponse,
    QueueLatestResponse,
    SendNowResponse,
    StateChangeResponse,
)
from feed_relay.schemas.dispatch import ApprovalRequest, QueueCountResponse
from feed_relay.services.automations import delete_automation, get_automation, set_state
from feed_relay.services.diagnostics import diagnose
from feed_relay.services.dispatch_queue import DispatchQueue
from feed_relay.services.schedule_engine import ScheduleEngine

from ..dependencies import DispatchWorkerDep, SessionDep

router = APIRouter(prefix="/automations", tags=["automations"])


def _not_found(exc: AutomationNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _load(db: SessionDep, automation_id: int) -> Automation:
    try:
        return get_automation(db, automation_id)
    except AutomationNotFoundError as exc:
        raise _not_found(exc) from exc


@router.get("/", response_model=list[AutomationResponse])
async def list_automations(db: SessionDep) -> list[Automation]:
    """List all automations."""
    return list(db.scalars(select(Automation).order_by(Automation.id)))


@router.get("/{automation_id}", response_model=AutomationResponse)
async def get_automation_detail(automation_id: int, db: SessionDep) -> Automation:
    """Get a specific automation by ID."""
    return _load(db, automation_id)


@router.put("/{automation_id}/delivery", response_model=AutomationResponse)
async def update_delivery(
    automation_id: int,
    payload: AutomationDeliveryUpdate,
    db: SessionDep,
) -> Automation:
    """Change delivery mode, batch windows, time zone and cron expression.

    Args:
        automation_id: Automation to update
        payload: Validated delivery settings
        db: Database session

    Returns:
        The updated automation
    """
    automation = _load(db, automation_id)
    automation.delivery_mode = payload.delivery_mode
    automation.batch_times = payload.batch_times
    automation.timezone = payload.timezone
    automation.cron_expression = payload.cron_expression
    # Recomputed on the next evaluation from the new settings.
    automation.next_run_at = None
    db.commit()
    db.refresh(automation)
    return automation


@router.post("/{automation_id}/state", response_model=StateChangeResponse)
async def change_state(
    automation_id: int,
    payload: AutomationStateUpdate,
    db: SessionDep,
) -> StateChangeResponse:
    """Activate, pause, stop or draft an automation.

    Leaving the active state skips the automation's queued entries.

    Raises:
        HTTPException: 404 for unknown automations, 409 when activation
            requirements are missing
    """
    try:
        change = set_state(db, automation_id, payload.state)
    except AutomationNotFoundError as exc:
        raise _not_found(exc) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return StateChangeResponse(
        automation=AutomationResponse.model_validate(change.automation),
        previous=change.previous,
        skipped_entries=change.skipped_entries,
        warning=change.warning,
    )


@router.delete("/{automation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_automation(automation_id: int, db: SessionDep) -> Response:
    """Delete an automation; sent entries are kept without an automation id."""
    try:
        delete_automation(db, automation_id)
    except AutomationNotFoundError as exc:
        raise _not_found(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/dispatch-all", response_model=DispatchAllResponse)
async def dispatch_all(db: SessionDep) -> DispatchAllResponse:
    """Evaluate every active automation immediately, ignoring cron timing."""
    results = ScheduleEngine(db).evaluate_all(force=True)
    return DispatchAllResponse(
        evaluated=len(results),
        enqueued=sum(result.enqueued for result in results),
        results=[EvaluationResponse(**asdict(result)) for result in results],
    )


@router.post("/{automation_id}/send-now", response_model=SendNowResponse)
async def send_now(
    automation_id: int,
    db: SessionDep,
    worker: DispatchWorkerDep,
) -> SendNowResponse:
    """Enqueue new items for one automation and send its entries right away.

    Args:
        automation_id: Automation to trigger
        db: Database session
        worker: Dispatch worker bound to this instance

    Returns:
        Sent, still queued and skipped counts with a reason when nothing went out
    """
    try:
        result = await worker.dispatch_automation(automation_id, db)
    except AutomationNotFoundError as exc:
        raise _not_found(exc) from exc
    return SendNowResponse.model_validate(result)


@router.post("/{automation_id}/queue-latest", response_model=QueueLatestResponse)
async def queue_latest(automation_id: int, db: SessionDep) -> QueueLatestResponse:
    """Queue the newest item of the automation's source for every destination."""
    automation = _load(db, automation_id)
    result = ScheduleEngine(db).queue_latest(automation)
    return QueueLatestResponse.model_validate(result)


@router.post("/{automation_id}/approve-all", response_model=QueueCountResponse)
async def approve_all(
    automation_id: int,
    payload: ApprovalRequest,
    db: SessionDep,
) -> QueueCountResponse:
    """Approve every entry of an automation that awaits review."""
    _load(db, automation_id)
    affected = DispatchQueue(db).approve_all(automation_id, payload.approved_by)
    return QueueCountResponse(affected=affected)


@router.get("/{automation_id}/diagnostics", response_model=DiagnosticsResponse)
async def get_diagnostics(automation_id: int, db: SessionDep) -> DiagnosticsResponse:
    """Explain whether an automation can send and what blocks it."""
    try:
        report = diagnose(db, automation_id)
    except AutomationNotFoundError as exc:
        raise _not_found(exc) from exc
    return DiagnosticsResponse.model_validate(report)
