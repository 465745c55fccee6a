"""SQLAlchemy models for automations and their destination bindings."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from feed_relay.db.session import Base
from feed_relay.db.time import utcnow
from feed_relay.db.types import enum_column

from .destination import Destination
from .source import ContentSource
from .template import MessageTemplate


class AutomationState(str, Enum):
    """Lifecycle state of an automation. Only ``active`` is evaluated."""

    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    DRAFT = "draft"


class DeliveryMode(str, Enum):
    """How queued entries are released to the sender."""

    IMMEDIATE = "immediate"
    BATCHED = "batched"


automation_destinations = Table(
    "automation_destinations",
    Base.metadata,
    Column(
        "automation_id",
        Integer,
        ForeignKey("automations.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "destination_id",
        Integer,
        ForeignKey("destinations.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class Automation(Base):
    """Rule binding one source and one template to a set of destinations.

    ``state`` is the single source of truth for whether the automation runs;
    see :func:`feed_relay.services.schedule_engine.is_running`.
    """

    __tablename__ = "automations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    state: Mapped[AutomationState] = mapped_column(
        enum_column(AutomationState),
        nullable=False,
        default=AutomationState.DRAFT,
    )
    delivery_mode: Mapped[DeliveryMode] = mapped_column(
        enum_column(DeliveryMode),
        nullable=False,
        default=DeliveryMode.IMMEDIATE,
    )
    # Ordered "HH:MM" local times; only read when delivery_mode is batched.
    batch_times: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    cron_expression: Mapped[str | None] = mapped_column(Text, nullable=True)
    approval_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    source_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("content_sources.id", ondelete="SET NULL"),
        nullable=True,
    )
    template_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("message_templates.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Watermark of content items already considered for enqueue.
    last_queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_dispatched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    source: Mapped[ContentSource | None] = relationship(ContentSource)
    template: Mapped[MessageTemplate | None] = relationship(MessageTemplate)
    destinations: Mapped[list[Destination]] = relationship(
        Destination,
        secondary=automation_destinations,
        order_by=Destination.id,
    )

    @property
    def active_destinations(self) -> list[Destination]:
        """Return bound destinations that are currently enabled."""
        return [destination for destination in self.destinations if destination.active]
