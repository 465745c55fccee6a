"""Periodic polling of content sources into the content store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from feed_relay.core.errors import FeedFetchError
from feed_relay.core.settings import settings
from feed_relay.db.session import session_scope
from feed_relay.db.time import Clock, as_utc, utcnow
from feed_relay.models import ContentSource
from feed_relay.services.content_store import ContentStore, IngestResult
from feed_relay.services.feed_fetcher import FeedFetcher

logger = logging.getLogger(__name__)

# Stored errors are truncated to keep the column readable in listings.
MAX_ERROR_LENGTH = 500


@dataclass
class PollSummary:
    """Counters for one polling pass."""

    polled: int = 0
    failed: int = 0
    inserted: int = 0
    duplicates: int = 0


def fetch_interval(source: ContentSource) -> timedelta:
    """Return how long to wait after the source's last fetch.

    Healthy sources are polled at their own interval, floored at the
    configured minimum; failing sources retry sooner.
    """
    interval = max(
        source.fetch_interval_seconds or settings.feed_default_interval_seconds,
        settings.feed_min_interval_seconds,
    )
    if source.consecutive_failures > 0:
        interval = min(interval, settings.feed_retry_interval_seconds)
    return timedelta(seconds=interval)


def is_source_due(source: ContentSource, now: datetime) -> bool:
    """Return True when ``source`` should be fetched at ``now``."""
    last = as_utc(source.last_fetched_at)
    return last is None or last + fetch_interval(source) <= now


class FeedPoller:
    """Fetch due sources and store their new items.

    A failed fetch is recorded on the source and never touches its items, so
    the schedule engine cannot mistake an outage for "nothing new".
    """

    def __init__(
        self,
        fetcher: FeedFetcher,
        *,
        db_session: Session | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.fetcher = fetcher
        self._db_session = db_session
        self._clock = clock

    def due_sources(self, db: Session, now: datetime | None = None) -> list[ContentSource]:
        """Return active sources whose fetch interval has elapsed."""
        now = now or self._clock()
        sources = db.scalars(
            select(ContentSource).where(ContentSource.active.is_(True)).order_by(ContentSource.id)
        )
        return [source for source in sources if is_source_due(source, now)]

    async def poll_source(self, db: Session, source: ContentSource) -> IngestResult | None:
        """Fetch one source and ingest its items.

        Returns:
            The ingest result, or None when the fetch failed
        """
        now = self._clock()
        try:
            fetched = await self.fetcher.fetch(
                source.url, etag=source.etag, last_modified=source.last_modified
            )
        except FeedFetchError as exc:
            source.last_fetched_at = now
            source.consecutive_failures += 1
            source.last_error = str(exc)[:MAX_ERROR_LENGTH]
            db.commit()
            logger.warning(
                "Source %s fetch failed (%d in a row): %s",
                source.id,
                source.consecutive_failures,
                exc,
            )
            return None

        result = IngestResult()
        if not fetched.not_modified:
            result = ContentStore(db, clock=self._clock).ingest(source, fetched.items)
            source.etag = fetched.etag
            source.last_modified = fetched.last_modified
        source.last_fetched_at = now
        source.last_success_at = now
        source.consecutive_failures = 0
        source.last_error = None
        db.commit()
        return result

    async def poll_due(self, db: Session | None = None) -> PollSummary:
        """Poll every due source once."""
        summary = PollSummary()
        with session_scope(db or self._db_session) as session:
            for source in self.due_sources(session):
                try:
                    result = await self.poll_source(session, source)
                except SQLAlchemyError as exc:
                    session.rollback()
                    logger.error("Source %s ingest failed: %s", source.id, exc, exc_info=True)
                    summary.failed += 1
                    continue
                summary.polled += 1
                if result is None:
                    summary.failed += 1
                    continue
                summary.inserted += len(result.inserted)
                summary.duplicates += result.duplicates

        if summary.inserted:
            logger.info(
                "Polled %d sources: %d new items, %d failures",
                summary.polled,
                summary.inserted,
                summary.failed,
            )
        return summary

    async def tick(self) -> None:
        """Periodic entry point used by the runtime."""
        await self.poll_due()
