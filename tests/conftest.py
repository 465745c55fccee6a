# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Callable, Generator, Iterator
from datetime import UTC, datetime, timedelta
from itertools import count

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("PYTEST_RUNNING", "true")
os.environ.setdefault("SCHEDULERS_ENABLED", "false")
os.environ.setdefault("INSTANCE_ID", "test-instance")

from feed_relay.api.v1.dependencies import get_sender_dep, get_throttle_dep
from feed_relay.core.errors import SendError
from feed_relay.db.session import Base
from feed_relay.db.session import get_db as app_get_session
from feed_relay.main import app as fastapi_app
from feed_relay.models import (
    Automation,
    AutomationState,
    ContentItem,
    ContentSource,
    Destination,
    DestinationKind,
    MessageTemplate,
)
from feed_relay.services.content_store import ContentStore
from feed_relay.services.feed_fetcher import RawItem
from feed_relay.services.rate_limit import SendThrottle
from feed_relay.services.sender import OutboundMessage, SendReceipt, SenderStatus

TEST_DB_URL = "sqlite://"
START_TIME = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

_SLUG_COUNTER = count(1)


class FakeClock:
    """Wall clock that only moves when a test advances it."""

    def __init__(self, start: datetime = START_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeSender:
    """In-memory MessageSender that records what it was asked to send."""

    def __init__(self) -> None:
        self.status = SenderStatus.READY
        self.sent: list[tuple[int, OutboundMessage]] = []
        self.errors: list[SendError] = []
        self.starts = 0
        self.closes = 0

    async def start(self) -> None:
        self.starts += 1
        self.status = SenderStatus.READY

    async def close(self) -> None:
        self.closes += 1
        self.status = SenderStatus.STOPPED

    async def send(self, destination: Destination, message: OutboundMessage) -> SendReceipt:
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append((destination.id, message))
        return SendReceipt(external_message_id=f"wamid-{len(self.sent)}")


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(
        bind=connection,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    )
    session = SessionLocal()

    try:
        yield session
    finally:
        session.close()

        if transaction.is_active:
            transaction.rollback()
        connection.close()

        # Services commit on every transition; wipe whatever reached the database.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_session_dependency(app: FastAPI, db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)


@pytest.fixture()
def fake_sender() -> FakeSender:
    """Return a connected in-memory sender."""
    return FakeSender()


@pytest.fixture()
def throttle() -> SendThrottle:
    """Return a throttle that never waits."""
    return SendThrottle(global_delay_seconds=0.0, destination_delay_seconds=0.0)


@pytest.fixture(autouse=True)
def override_sender_dependencies(
    app: FastAPI, fake_sender: FakeSender, throttle: SendThrottle
) -> Iterator[None]:
    """Keep API tests away from the real messaging gateway."""
    app.dependency_overrides[get_sender_dep] = lambda: fake_sender
    app.dependency_overrides[get_throttle_dep] = lambda: throttle
    try:
        yield
    finally:
        app.dependency_overrides.pop(get_sender_dep, None)
        app.dependency_overrides.pop(get_throttle_dep, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


@pytest.fixture()
def clock() -> FakeClock:
    """Return a controllable clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture()
def source(db_session: Session) -> Iterator[ContentSource]:
    """Create an active, healthy content source."""
    source = ContentSource(
        name="Example News",
        url="https://news.example.com/rss.xml",
        fetch_interval_seconds=300,
    )
    db_session.add(source)
    db_session.flush()
    db_session.refresh(source)
    yield source


@pytest.fixture()
def template(db_session: Session) -> Iterator[MessageTemplate]:
    """Create a headline template."""
    template = MessageTemplate(name="Headline", body="*{{ title }}*\n{{ url }}")
    db_session.add(template)
    db_session.flush()
    db_session.refresh(template)
    yield template


@pytest.fixture()
def destinations(db_session: Session) -> Iterator[list[Destination]]:
    """Create two active destinations."""
    created = [
        Destination(name="Alerts group", kind=DestinationKind.GROUP, address="120363-alerts@g.us"),
        Destination(name="Ops channel", kind=DestinationKind.CHANNEL, address="ops-updates"),
    ]
    db_session.add_all(created)
    db_session.flush()
    for destination in created:
        db_session.refresh(destination)
    yield created


@pytest.fixture()
def automation(
    db_session: Session,
    source: ContentSource,
    template: MessageTemplate,
    destinations: list[Destination],
) -> Iterator[Automation]:
    """Create an active automation bound to both destinations."""
    automation = Automation(
        name="Headlines",
        state=AutomationState.ACTIVE,
        source=source,
        template=template,
        destinations=list(destinations),
    )
    db_session.add(automation)
    db_session.flush()
    db_session.refresh(automation)
    yield automation


@pytest.fixture()
def make_items(
    db_session: Session, source: ContentSource, clock: FakeClock
) -> Callable[..., list[ContentItem]]:
    """Return a helper that stores one fetch worth of items and advances the clock."""

    def _make(*titles: str, target: ContentSource | None = None) -> list[ContentItem]:
        raw = [
            RawItem(
                title=title,
                url=f"https://news.example.com/articles/{next(_SLUG_COUNTER)}",
                description=f"Summary of {title}",
            )
            for title in titles
        ]
        result = ContentStore(db_session, clock=clock).ingest(target or source, raw)
        clock.advance(1)
        return result.inserted

    return _make
