# src/feed_relay/models/__init__.py
"""SQLAlchemy models for the Feed Relay service."""

from .automation import Automation, AutomationState, DeliveryMode, automation_destinations
from .content import ContentItem
from .destination import Destination, DestinationKind
from .dispatch import DispatchEntry, DispatchStatus, FailureKind
from .lease import LeaseStatus, SessionLease
from .source import ContentSource
from .template import MessageTemplate

__all__ = [
    "Automation", "AutomationState", "DeliveryMode", "automation_destinations",
    "ContentItem",
    "ContentSource",
    "Destination", "DestinationKind",
    "DispatchEntry", "DispatchStatus", "FailureKind",
    "LeaseStatus", "SessionLease",
    "MessageTemplate",
]
