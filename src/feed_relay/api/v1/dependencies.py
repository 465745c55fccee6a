"""Shared API dependencies for the dispatch core."""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from feed_relay.db.session import get_db
from feed_relay.services.dispatcher import DispatchWorker
from feed_relay.services.rate_limit import SendThrottle, get_send_throttle
from feed_relay.services.sender import MessageSender, get_message_sender
from feed_relay.services.session_keeper import SessionKeeper

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_sender_dep() -> MessageSender:
    """Get the process-wide message sender for dependency injection."""
    return get_message_sender()


def get_throttle_dep() -> SendThrottle:
    """Get the process-wide send throttle for dependency injection."""
    return get_send_throttle()


SenderDep = Annotated[MessageSender, Depends(get_sender_dep)]
ThrottleDep = Annotated[SendThrottle, Depends(get_throttle_dep)]


def get_dispatch_worker(sender: SenderDep, throttle: ThrottleDep) -> DispatchWorker:
    """Build a dispatch worker sharing the process sender and throttle."""
    return DispatchWorker(sender, throttle)


def get_session_keeper(request: Request, sender: SenderDep) -> SessionKeeper:
    """Return the running keeper, or a standalone one when background jobs are off.

    Args:
        request: Incoming request, used to reach the application runtime
        sender: Message sender the keeper controls

    Returns:
        SessionKeeper bound to this instance
    """
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is not None:
        return runtime.keeper
    return SessionKeeper(sender)


DispatchWorkerDep = Annotated[DispatchWorker, Depends(get_dispatch_worker)]
SessionKeeperDep = Annotated[SessionKeeper, Depends(get_session_keeper)]
