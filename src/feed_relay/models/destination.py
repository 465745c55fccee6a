"""SQLAlchemy model for messaging destinations."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from feed_relay.db.session import Base
from feed_relay.db.time import utcnow
from feed_relay.db.types import enum_column


class DestinationKind(str, Enum):
    """Kind of chat a destination address points at."""

    INDIVIDUAL = "individual"
    GROUP = "group"
    CHANNEL = "channel"


class Destination(Base):
    """A chat, group or channel that receives dispatched messages."""

    __tablename__ = "destinations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    kind: Mapped[DestinationKind] = mapped_column(
        enum_column(DestinationKind),
        nullable=False,
        default=DestinationKind.INDIVIDUAL,
    )
    # Transport address: phone number, group jid or channel id.
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Overrides the configured per-destination pacing when set.
    min_delay_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    @property
    def throttle_key(self) -> str:
        """Return the key used to pace sends to this destination."""
        return f"{self.kind.value}:{self.address or self.id}"
