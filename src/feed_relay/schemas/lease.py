"""Session lease schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from feed_relay.models import LeaseStatus


class LeaseStatusResponse(BaseModel):
    """Schema for the session lease as seen by this instance."""

    resource: str
    owner_id: str | None
    expires_at: datetime | None
    status: LeaseStatus
    live: bool
    instance_id: str
    is_leader: bool
    sender_status: str

    model_config = ConfigDict(from_attributes=True)
