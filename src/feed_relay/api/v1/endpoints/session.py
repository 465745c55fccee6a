"""Messaging session lease endpoints."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from feed_relay.core.errors import LeaseConflictError
from feed_relay.schemas.lease import LeaseStatusResponse
from feed_relay.services.lease import LeaseInfo, LeaseManager
from feed_relay.services.session_keeper import SessionKeeper

from ..dependencies import SessionDep, SessionKeeperDep

router = APIRouter(prefix="/session", tags=["session"])


def _response(info: LeaseInfo, keeper: SessionKeeper) -> LeaseStatusResponse:
    return LeaseStatusResponse(
        resource=info.resource,
        owner_id=info.owner_id,
        expires_at=info.expires_at,
        status=info.status,
        live=info.live,
        instance_id=keeper.instance_id,
        is_leader=info.live and info.owner_id == keeper.instance_id,
        sender_status=keeper.sender.status.value,
    )


@router.get("/lease", response_model=LeaseStatusResponse)
async def get_lease(db: SessionDep, keeper: SessionKeeperDep) -> LeaseStatusResponse:
    """Report who owns the messaging session and its status."""
    return _response(LeaseManager(db).get_info(), keeper)


@router.post("/takeover", response_model=LeaseStatusResponse)
async def take_over(db: SessionDep, keeper: SessionKeeperDep) -> LeaseStatusResponse:
    """Force this instance to own the messaging session.

    The previous owner may still believe it holds the session; the lease is
    flagged ``conflict`` until this instance reconnects.

    Raises:
        HTTPException: 409 if the new owner could not be persisted
    """
    try:
        info = await keeper.take_over(db)
    except LeaseConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _response(info, keeper)
