"""Durable storage of fetched content items."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from feed_relay.db.time import Clock, utcnow
from feed_relay.models import ContentItem, ContentSource
from feed_relay.services.dedup import dedup_key
from feed_relay.services.feed_fetcher import RawItem

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=UTC)


@dataclass
class IngestResult:
    """Outcome of storing one fetch worth of raw items."""

    inserted: list[ContentItem] = field(default_factory=list)
    duplicates: int = 0


class ContentStore:
    """Insert and query content items for a source.

    Duplicate detection relies on the per-source unique constraints; a
    violation while inserting means the item is already stored.
    """

    def __init__(self, db: Session, clock: Clock = utcnow) -> None:
        self.db = db
        self._clock = clock

    def _exists(self, source_id: int, normalized_url: str, digest: str) -> bool:
        stmt = (
            select(ContentItem.id)
            .where(
                ContentItem.source_id == source_id,
                or_(
                    ContentItem.normalized_url == normalized_url,
                    ContentItem.content_hash == digest,
                ),
            )
            .limit(1)
        )
        return self.db.execute(stmt).first() is not None

    def ingest(self, source: ContentSource, raw_items: Iterable[RawItem]) -> IngestResult:
        """Store new items for ``source`` and skip the ones already seen.

        Items are written oldest first with strictly increasing ``created_at``
        so cursor windows never split a batch of equal timestamps.

        Args:
            source: Source the items were fetched from
            raw_items: Parsed feed entries

        Returns:
            Inserted rows and the number of duplicates skipped
        """
        result = IngestResult()
        ordered = sorted(raw_items, key=lambda item: item.published_at or _EPOCH)
        now = self._clock()
        seen: set[str] = set()

        for offset, raw in enumerate(ordered):
            if not raw.title and not raw.url:
                continue
            key = dedup_key(raw.title, raw.url, raw.guid)
            if key.normalized_url in seen or key.content_hash in seen:
                result.duplicates += 1
                continue
            seen.update((key.normalized_url, key.content_hash))

            if self._exists(source.id, key.normalized_url, key.content_hash):
                result.duplicates += 1
                continue

            item = ContentItem(
                source_id=source.id,
                guid=raw.guid,
                title=raw.title,
                url=raw.url,
                normalized_url=key.normalized_url,
                content_hash=key.content_hash,
                published_at=raw.published_at,
                payload=raw.payload(),
                created_at=now + timedelta(microseconds=offset),
            )
            try:
                with self.db.begin_nested():
                    self.db.add(item)
                    self.db.flush()
            except IntegrityError:
                # Another writer stored the same story between the check and the insert.
                result.duplicates += 1
                continue
            result.inserted.append(item)

        self.db.commit()
        logger.debug(
            "Source %s: stored %d items, skipped %d duplicates",
            source.id,
            len(result.inserted),
            result.duplicates,
        )
        return result

    def items_since(
        self, source_id: int, cursor: datetime | None, limit: int
    ) -> list[ContentItem]:
        """Return up to ``limit`` items created after ``cursor``, oldest first."""
        stmt = select(ContentItem).where(ContentItem.source_id == source_id)
        if cursor is not None:
            stmt = stmt.where(ContentItem.created_at > cursor)
        stmt = stmt.order_by(ContentItem.created_at, ContentItem.id).limit(limit)
        return list(self.db.scalars(stmt))

    def has_items_since(self, source_id: int, cursor: datetime | None) -> bool:
        """Return True when the source has any item newer than ``cursor``."""
        stmt = select(ContentItem.id).where(ContentItem.source_id == source_id)
        if cursor is not None:
            stmt = stmt.where(ContentItem.created_at > cursor)
        return self.db.execute(stmt.limit(1)).first() is not None

    def latest_item(self, source_id: int) -> ContentItem | None:
        """Return the most recently stored item for a source."""
        stmt = (
            select(ContentItem)
            .where(ContentItem.source_id == source_id)
            .order_by(ContentItem.created_at.desc(), ContentItem.id.desc())
            .limit(1)
        )
        return self.db.scalars(stmt).first()

    def count(self, source_id: int) -> int:
        """Return how many items are stored for a source."""
        return self.db.query(ContentItem).filter(ContentItem.source_id == source_id).count()
