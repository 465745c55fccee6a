"""SQLAlchemy model for the messaging session lease."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from feed_relay.db.session import Base
from feed_relay.db.time import utcnow
from feed_relay.db.types import enum_column


class LeaseStatus(str, Enum):
    """Connection status reported alongside the lease owner."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CONFLICT = "conflict"
    ERROR = "error"


class SessionLease(Base):
    """Exclusive, time-bounded ownership of one named external session.

    A row whose ``expires_at`` has passed is unowned regardless of
    ``owner_id``. Rows are created on first use and never deleted.
    """

    __tablename__ = "session_leases"

    resource: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[LeaseStatus] = mapped_column(
        enum_column(LeaseStatus),
        nullable=False,
        default=LeaseStatus.DISCONNECTED,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
