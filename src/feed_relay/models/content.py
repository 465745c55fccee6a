"""SQLAlchemy model for fetched content items."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    CHAR,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from feed_relay.db.session import Base
from feed_relay.db.time import utcnow

from .source import ContentSource


class ContentItem(Base):
    """One fetched unit of content from a source.

    Both dedup keys are unique per source: a republished story under a new
    URL is caught by the hash, a retitled story by the URL.
    """

    __tablename__ = "content_items"
    __table_args__ = (
        UniqueConstraint("source_id", "normalized_url", name="uq_content_items_source_url"),
        UniqueConstraint("source_id", "content_hash", name="uq_content_items_source_hash"),
        Index("ix_content_items_source_created", "source_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("content_sources.id", ondelete="CASCADE"),
        nullable=False,
    )
    guid: Mapped[str | None] = mapped_column(Text, nullable=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    normalized_url: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # description, body, author, image_url, categories; enrichment may add keys later.
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    source: Mapped[ContentSource] = relationship(ContentSource)
