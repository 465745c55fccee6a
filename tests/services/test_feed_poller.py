"""Tests for periodic feed polling."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from feed_relay.core.errors import FeedFetchError
from feed_relay.models import ContentSource
from feed_relay.services.content_store import ContentStore
from feed_relay.services.feed_fetcher import FeedFetcher, FetchResult, RawItem
from feed_relay.services.feed_poller import FeedPoller, fetch_interval, is_source_due


@pytest.fixture()
def fetcher():
    return AsyncMock(spec=FeedFetcher)


@pytest.fixture()
def poller(fetcher, db_session, clock):
    return FeedPoller(fetcher, db_session=db_session, clock=clock)


def _result(*titles, etag=None):
    return FetchResult(
        items=[RawItem(title=title, url=f"https://news.example.com/{title.lower()}") for title in titles],
        etag=etag,
    )


def test_fetch_interval_is_floored_and_shortened_while_failing():
    healthy = ContentSource(name="a", url="https://a.example.com", fetch_interval_seconds=5, consecutive_failures=0)
    slow = ContentSource(name="b", url="https://b.example.com", fetch_interval_seconds=900, consecutive_failures=0)
    failing = ContentSource(name="c", url="https://c.example.com", fetch_interval_seconds=900, consecutive_failures=2)

    assert fetch_interval(healthy) == timedelta(seconds=60)
    assert fetch_interval(slow) == timedelta(seconds=900)
    assert fetch_interval(failing) == timedelta(seconds=60)


def test_is_source_due(source, clock):
    assert is_source_due(source, clock())

    source.last_fetched_at = clock()
    assert not is_source_due(source, clock.advance(299))
    assert is_source_due(source, clock.advance(1))


@pytest.mark.asyncio
async def test_poll_due_ingests_new_items(poller, fetcher, db_session, source, clock):
    fetcher.fetch.return_value = _result("Rates", "Storm", etag='"abc"')

    summary = await poller.poll_due()

    assert (summary.polled, summary.inserted, summary.failed) == (1, 2, 0)
    fetcher.fetch.assert_awaited_once_with(source.url, etag=None, last_modified=None)
    assert source.etag == '"abc"'
    assert source.last_success_at == clock()
    assert ContentStore(db_session).count(source.id) == 2


@pytest.mark.asyncio
async def test_poll_due_skips_sources_that_are_not_due(poller, fetcher, source, clock):
    source.last_fetched_at = clock()

    summary = await poller.poll_due()

    assert summary.polled == 0
    fetcher.fetch.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_fetch_is_recorded_and_items_untouched(poller, fetcher, db_session, source, make_items):
    make_items("Existing")
    fetcher.fetch.side_effect = FeedFetchError("Feed returned HTTP 503")

    summary = await poller.poll_due()

    assert (summary.polled, summary.failed) == (1, 1)
    assert source.consecutive_failures == 1
    assert source.last_error == "Feed returned HTTP 503"
    assert not source.is_healthy
    assert ContentStore(db_session).count(source.id) == 1


@pytest.mark.asyncio
async def test_success_after_failure_resets_health(poller, fetcher, db_session, source):
    source.consecutive_failures = 4
    source.last_error = "timeout"
    fetcher.fetch.return_value = _result("Back online")

    result = await poller.poll_source(db_session, source)

    assert len(result.inserted) == 1
    assert source.consecutive_failures == 0
    assert source.last_error is None


@pytest.mark.asyncio
async def test_not_modified_counts_as_success_without_items(poller, fetcher, db_session, source):
    source.etag = '"v1"'
    source.consecutive_failures = 1
    fetcher.fetch.return_value = FetchResult(etag='"v1"', not_modified=True)

    result = await poller.poll_source(db_session, source)

    assert result.inserted == []
    assert source.consecutive_failures == 0
    assert source.etag == '"v1"'
    fetcher.fetch.assert_awaited_once_with(source.url, etag='"v1"', last_modified=None)


@pytest.mark.asyncio
async def test_disabled_sources_are_not_polled(poller, fetcher, db_session, source):
    source.active = False
    db_session.flush()

    summary = await poller.poll_due()

    assert summary.polled == 0
    fetcher.fetch.assert_not_awaited()
