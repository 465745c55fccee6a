"""API endpoint modules for version 1."""

from .automations import router as automations_router
from .queue import router as queue_router
from .session import router as session_router
from .system import router as system_router

__all__ = [
    "automations_router",
    "queue_router",
    "session_router",
    "system_router",
]
