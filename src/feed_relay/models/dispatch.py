"""SQLAlchemy model for dispatch queue entries."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from feed_relay.db.session import Base
from feed_relay.db.time import utcnow
from feed_relay.db.types import enum_column

from .automation import Automation
from .content import ContentItem
from .destination import Destination


class DispatchStatus(str, Enum):
    """States of the dispatch queue state machine."""

    AWAITING_APPROVAL = "awaiting_approval"
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    PLAYED = "played"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailureKind(str, Enum):
    """Classification of the last send failure on an entry."""

    RETRIABLE = "retriable"
    PERMANENT = "permanent"


# Statuses that mean the transport accepted the message.
DELIVERED_STATUSES = frozenset(
    {DispatchStatus.SENT, DispatchStatus.DELIVERED, DispatchStatus.READ, DispatchStatus.PLAYED}
)
# Statuses an operator may bulk-delete; sent history and in-flight rows are kept.
UNSENT_STATUSES = frozenset(
    {
        DispatchStatus.AWAITING_APPROVAL,
        DispatchStatus.PENDING,
        DispatchStatus.FAILED,
        DispatchStatus.SKIPPED,
    }
)


class DispatchEntry(Base):
    """One delivery attempt for an (automation, content item, destination) triple.

    Manual messages have no automation or content item and carry their text
    in ``message_text`` with typed options in ``options``.
    """

    __tablename__ = "dispatch_entries"
    __table_args__ = (
        UniqueConstraint(
            "automation_id",
            "content_item_id",
            "destination_id",
            name="uq_dispatch_entries_triple",
        ),
        Index("ix_dispatch_entries_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Kept as NULL on sent rows after the automation is deleted, for audit.
    automation_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("automations.id", ondelete="SET NULL"),
        nullable=True,
    )
    content_item_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("content_items.id"),
        nullable=True,
    )
    destination_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("destinations.id", ondelete="CASCADE"),
        nullable=False,
    )

    status: Mapped[DispatchStatus] = mapped_column(
        enum_column(DispatchStatus),
        nullable=False,
        default=DispatchStatus.PENDING,
    )
    failure_kind: Mapped[FailureKind | None] = mapped_column(
        enum_column(FailureKind), nullable=True
    )
    retry_count: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    processing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    claimed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    played_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    external_message_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    rendered_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    message_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    options: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_by: Mapped[str | None] = mapped_column(String(200), nullable=True)

    automation: Mapped[Automation | None] = relationship(Automation)
    content_item: Mapped[ContentItem | None] = relationship(ContentItem)
    destination: Mapped[Destination] = relationship(Destination)
