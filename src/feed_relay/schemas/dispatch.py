"""Dispatch queue related Pydantic schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from feed_relay.models import DispatchStatus, FailureKind


class DeliveryOptions(BaseModel):
    """Typed delivery options stored in the entry's ``options`` column."""

    disable_link_preview: bool = Field(
        default=False, description="Ask the transport not to render a link preview"
    )
    include_caption: bool = Field(
        default=True, description="Send the text as a caption when an image is attached"
    )
    image_url: str | None = Field(default=None, description="Optional image to attach")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_column(cls, value: dict[str, Any] | None) -> DeliveryOptions:
        """Build options from the stored JSON, tolerating an empty column."""
        return cls.model_validate(value or {})


class DispatchEntryResponse(BaseModel):
    """Schema for a dispatch entry returned by the API."""

    id: int
    automation_id: int | None
    content_item_id: int | None
    destination_id: int
    status: DispatchStatus
    failure_kind: FailureKind | None
    retry_count: int
    error_message: str | None
    created_at: datetime
    processing_started_at: datetime | None
    sent_at: datetime | None
    delivered_at: datetime | None
    read_at: datetime | None
    external_message_id: str | None
    rendered_content: str | None
    message_text: str | None
    options: dict[str, Any]
    approved_at: datetime | None
    approved_by: str | None

    model_config = ConfigDict(from_attributes=True)


class ManualMessageCreate(BaseModel):
    """Schema for queueing an ad-hoc message to destinations."""

    text: str = Field(..., min_length=1, description="Message body")
    destination_ids: list[int] = Field(..., min_length=1, description="Destinations to send to")
    options: DeliveryOptions = Field(default_factory=DeliveryOptions)


class ClearQueueRequest(BaseModel):
    """Schema for bulk-deleting unsent entries of one status."""

    status: DispatchStatus = Field(..., description="Status whose entries are deleted")
    automation_id: int | None = Field(default=None, description="Limit to one automation")


class ApprovalRequest(BaseModel):
    """Schema for approving entries that await operator review."""

    approved_by: str = Field(..., min_length=1, description="Operator name recorded on approval")


class ReceiptUpdate(BaseModel):
    """Schema for transport delivery receipts."""

    external_message_id: str = Field(..., min_length=1)
    status: DispatchStatus = Field(..., description="delivered, read or played")


class QueueCountResponse(BaseModel):
    """Schema for bulk operation results."""

    affected: int
