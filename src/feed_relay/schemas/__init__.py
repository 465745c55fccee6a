"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .automation import (
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
from .dispatch import (
    ApprovalRequest,
    ClearQueueRequest,
    DeliveryOptions,
    DispatchEntryResponse,
    ManualMessageCreate,
    QueueCountResponse,
    ReceiptUpdate,
)
from .lease import LeaseStatusResponse

__all__ = [
    "AutomationDeliveryUpdate", "AutomationResponse", "AutomationStateUpdate",
    "DiagnosticsResponse", "DispatchAllResponse", "EvaluationResponse",
    "QueueLatestResponse", "SendNowResponse", "StateChangeResponse",
    "ApprovalRequest", "ClearQueueRequest", "DeliveryOptions", "DispatchEntryResponse",
    "ManualMessageCreate", "QueueCountResponse", "ReceiptUpdate",
    "LeaseStatusResponse",
]
