"""Dispatch queue administration endpoints."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Response, status
from sqlalchemy import select

from feed_relay.core.errors import InvalidTransitionError
from feed_relay.models import Destination, DispatchEntry, DispatchStatus
from feed_relay.schemas.dispatch import (
    ApprovalRequest,
    ClearQueueRequest,
    DispatchEntryResponse,
    ManualMessageCreate,
    QueueCountResponse,
    ReceiptUpdate,
)
from feed_relay.services.dispatch_queue import DispatchQueue

from ..dependencies import SessionDep

router = APIRouter(prefix="/queue", tags=["queue"])


def _conflict(exc: InvalidTransitionError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


def _missing(exc: LookupError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc.args[0]))


@router.get("/", response_model=list[DispatchEntryResponse])
async def list_entries(
    db: SessionDep,
    status_filter: DispatchStatus | None = Query(default=None, alias="status"),
    automation_id: int | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[DispatchEntry]:
    """List dispatch entries newest first."""
    return DispatchQueue(db).list_entries(
        status=status_filter, automation_id=automation_id, limit=limit, offset=offset
    )


@router.get("/stats")
async def queue_stats(db: SessionDep, automation_id: int | None = None) -> dict[str, int]:
    """Return entry counts per status."""
    return DispatchQueue(db).stats(automation_id)


@router.post("/clear", response_model=QueueCountResponse)
async def clear_queue(payload: ClearQueueRequest, db: SessionDep) -> QueueCountResponse:
    """Delete every entry in one unsent status.

    Raises:
        HTTPException: 400 for sent or in-flight statuses
    """
    try:
        affected = DispatchQueue(db).clear(payload.status, payload.automation_id)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return QueueCountResponse(affected=affected)


@router.post("/retry-failed", response_model=QueueCountResponse)
async def retry_failed(db: SessionDep, automation_id: int | None = None) -> QueueCountResponse:
    """Reset failed entries to pending with a fresh retry budget."""
    return QueueCountResponse(affected=DispatchQueue(db).retry_failed(automation_id))


@router.post("/manual", response_model=list[DispatchEntryResponse], status_code=status.HTTP_201_CREATED)
async def queue_manual_message(payload: ManualMessageCreate, db: SessionDep) -> list[DispatchEntry]:
    """Queue an ad-hoc message to one or more destinations.

    Args:
        payload: Message text, destination ids and delivery options
        db: Database session

    Returns:
        The created entries
    """
    destinations = list(
        db.scalars(select(Destination).where(Destination.id.in_(payload.destination_ids)))
    )
    found = {destination.id for destination in destinations}
    missing = sorted(set(payload.destination_ids) - found)
    if missing:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown destinations: {missing}",
        )
    return DispatchQueue(db).enqueue_manual(payload.text, destinations, payload.options)


@router.post("/receipts")
async def apply_receipt(payload: ReceiptUpdate, db: SessionDep) -> dict[str, bool]:
    """Record a delivered, read or played receipt from the transport."""
    try:
        updated = DispatchQueue(db).apply_receipt(payload.external_message_id, payload.status)
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"updated": updated}


@router.post("/content-items/{content_item_id}/pause", response_model=QueueCountResponse)
async def pause_content_item(
    content_item_id: int,
    db: SessionDep,
    automation_id: int | None = None,
) -> QueueCountResponse:
    """Skip every unsent entry for one content item across all destinations."""
    affected = DispatchQueue(db).pause_content_item(content_item_id, automation_id)
    return QueueCountResponse(affected=affected)


@router.post("/{entry_id}/pause", response_model=DispatchEntryResponse)
async def pause_entry(entry_id: int, db: SessionDep) -> DispatchEntry:
    """Skip one entry that has not been sent yet."""
    try:
        return DispatchQueue(db).pause_entry(entry_id)
    except InvalidTransitionError as exc:
        raise _conflict(exc) from exc
    except LookupError as exc:
        raise _missing(exc) from exc


@router.post("/{entry_id}/resume", response_model=DispatchEntryResponse)
async def resume_entry(entry_id: int, db: SessionDep) -> DispatchEntry:
    """Return a skipped or failed entry to the queue."""
    try:
        return DispatchQueue(db).resume_entry(entry_id)
    except InvalidTransitionError as exc:
        raise _conflict(exc) from exc
    except LookupError as exc:
        raise _missing(exc) from exc


@router.post("/{entry_id}/approve", response_model=DispatchEntryResponse)
async def approve_entry(entry_id: int, payload: ApprovalRequest, db: SessionDep) -> DispatchEntry:
    """Release an entry awaiting approval to the pending queue."""
    try:
        return DispatchQueue(db).approve(entry_id, payload.approved_by)
    except InvalidTransitionError as exc:
        raise _conflict(exc) from exc
    except LookupError as exc:
        raise _missing(exc) from exc


@router.delete("/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_entry(entry_id: int, db: SessionDep) -> Response:
    """Delete one entry unless it is being sent right now."""
    try:
        DispatchQueue(db).delete_entry(entry_id)
    except InvalidTransitionError as exc:
        raise _conflict(exc) from exc
    except LookupError as exc:
        raise _missing(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
