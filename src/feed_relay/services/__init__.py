"""Business logic services for the Feed Relay application."""

from .content_store import ContentStore
from .dispatch_queue import DispatchQueue
from .dispatcher import DispatchWorker
from .lease import LeaseManager
from .rate_limit import SendThrottle
from .schedule_engine import ScheduleEngine, is_running
from .supervisor import RetrySupervisor

__all__ = [
    "ContentStore",
    "DispatchQueue",
    "DispatchWorker",
    "LeaseManager",
    "SendThrottle",
    "ScheduleEngine", "is_running",
    "RetrySupervisor",
]
