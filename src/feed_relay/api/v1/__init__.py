"""Version 1 API endpoints."""

from .endpoints import (
    automations_router,
    queue_router,
    session_router,
    system_router,
)

__all__ = [
    "automations_router",
    "queue_router",
    "session_router",
    "system_router",
]
