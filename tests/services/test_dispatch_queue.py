"""Tests for idempotent enqueue and the dispatch entry state machine."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from feed_relay.core.errors import InvalidTransitionError, PermanentSendError, RetriableSendError
from feed_relay.db.session import Base
from feed_relay.models import (
    Automation,
    AutomationState,
    ContentItem,
    ContentSource,
    Destination,
    DestinationKind,
    DispatchEntry,
    DispatchStatus,
    FailureKind,
    MessageTemplate,
)
from feed_relay.schemas.dispatch import DeliveryOptions
from feed_relay.services.content_store import ContentStore
from feed_relay.services.dispatch_queue import (
    PAUSED_BY_USER,
    PAUSED_FOR_ITEM,
    RECLAIMED_MESSAGE,
    DispatchQueue,
)
from feed_relay.services.feed_fetcher import RawItem
from feed_relay.services.sender import SendReceipt


def _entries(db_session, **filters):
    stmt = select(DispatchEntry).order_by(DispatchEntry.id)
    for column, value in filters.items():
        stmt = stmt.where(getattr(DispatchEntry, column) == value)
    return list(db_session.scalars(stmt.execution_options(populate_existing=True)))


@pytest.fixture()
def queue(db_session, clock):
    return DispatchQueue(db_session, clock=clock)


def _claim_one(queue, entry_id):
    assert queue.claim(entry_id, "worker-1")
    return entry_id


def test_enqueue_creates_one_entry_per_item_and_destination(queue, db_session, automation, make_items):
    items = make_items("One", "Two")

    queue.enqueue(automation, items)
    queue.enqueue(automation, items)

    entries = _entries(db_session)
    assert len(entries) == 4
    assert {(e.content_item_id, e.destination_id) for e in entries} == {
        (item.id, destination.id) for item in items for destination in automation.destinations
    }
    assert all(e.status is DispatchStatus.PENDING for e in entries)


def test_enqueue_skips_disabled_destinations(queue, db_session, automation, destinations, make_items):
    destinations[1].active = False
    db_session.flush()

    queue.enqueue(automation, make_items("One"))

    assert [e.destination_id for e in _entries(db_session)] == [destinations[0].id]


def test_enqueue_with_approval_starts_awaiting_approval(queue, db_session, automation, make_items):
    automation.approval_required = True
    db_session.flush()

    queue.enqueue(automation, make_items("One"))

    assert {e.status for e in _entries(db_session)} == {DispatchStatus.AWAITING_APPROVAL}


def test_claim_is_exclusive(queue, db_session, automation, make_items):
    queue.enqueue(automation, make_items("One"))
    entry = _entries(db_session)[0]

    assert queue.claim(entry.id, "worker-1")
    assert not queue.claim(entry.id, "worker-2")

    claimed = queue.get(entry.id)
    assert claimed.status is DispatchStatus.PROCESSING
    assert claimed.claimed_by == "worker-1"
    assert claimed.processing_started_at is not None


def test_claim_batch_takes_oldest_first_and_honors_exclusions(
    queue, db_session, automation, destinations, make_items
):
    first, second = make_items("One", "Two")
    queue.enqueue(automation, [first], destinations[:1])
    queue.enqueue(automation, [second], destinations[:1])

    assert queue.claim_batch("worker-1", 10, exclude_automation_ids=[automation.id]) == []

    batch = queue.claim_batch("worker-1", 1)
    assert [entry.content_item_id for entry in batch] == [first.id]
    assert batch[0].status is DispatchStatus.PROCESSING


def test_claim_batch_includes_manual_entries_when_excluding(queue, db_session, automation, destinations):
    queue.enqueue_manual("Maintenance tonight", destinations[:1])

    batch = queue.claim_batch("worker-1", 10, exclude_automation_ids=[automation.id])

    assert [entry.message_text for entry in batch] == ["Maintenance tonight"]


def test_mark_sent_and_receipts_only_move_forward(queue, db_session, automation, make_items):
    queue.enqueue(automation, make_items("One"), automation.destinations[:1])
    entry_id = _claim_one(queue, _entries(db_session)[0].id)

    assert queue.mark_sent(entry_id, SendReceipt("wamid-1"), "*One*")
    assert not queue.mark_sent(entry_id, SendReceipt("wamid-1"), "*One*")

    assert queue.apply_receipt("wamid-1", DispatchStatus.READ)
    assert not queue.apply_receipt("wamid-1", DispatchStatus.DELIVERED)

    entry = queue.get(entry_id)
    assert entry.status is DispatchStatus.READ
    assert entry.rendered_content == "*One*"
    assert entry.read_at is not None

    with pytest.raises(InvalidTransitionError):
        queue.apply_receipt("wamid-1", DispatchStatus.PENDING)


def test_retriable_failures_count_retries_until_exhausted(queue, db_session, automation, make_items):
    queue.enqueue(automation, make_items("One"), automation.destinations[:1])
    entry_id = _entries(db_session)[0].id

    messages = []
    for _ in range(3):
        _claim_one(queue, entry_id)
        failed = queue.mark_failed(entry_id, RetriableSendError("timeout"), max_retries=3)
        messages.append(failed.error_message)
        queue.requeue_failed(max_retries=3)

    entry = queue.get(entry_id)
    assert messages == [
        "Retry 1/3: timeout",
        "Retry 2/3: timeout",
        "Max retries (3) exceeded: timeout",
    ]
    assert entry.status is DispatchStatus.FAILED
    assert entry.retry_count == 3
    assert entry.failure_kind is FailureKind.RETRIABLE
    assert queue.requeue_failed(max_retries=3) == 0
    assert queue.count_exhausted(max_retries=3) == 1


def test_permanent_failure_is_terminal(queue, db_session, automation, make_items):
    queue.enqueue(automation, make_items("One"), automation.destinations[:1])
    entry_id = _claim_one(queue, _entries(db_session)[0].id)

    failed = queue.mark_failed(entry_id, PermanentSendError("invalid recipient"), max_retries=3)

    assert failed.status is DispatchStatus.FAILED
    assert failed.failure_kind is FailureKind.PERMANENT
    assert failed.retry_count == 0
    assert failed.error_message == "invalid recipient"
    assert queue.requeue_failed(max_retries=3) == 0
    assert queue.count_exhausted(max_retries=3, automation_id=automation.id) == 1


def test_mark_failed_ignores_entries_no_longer_processing(queue, db_session, automation, make_items):
    queue.enqueue(automation, make_items("One"), automation.destinations[:1])
    entry_id = _entries(db_session)[0].id

    entry = queue.mark_failed(entry_id, RetriableSendError("late"), max_retries=3)

    assert entry.status is DispatchStatus.PENDING
    assert entry.retry_count == 0
    assert queue.mark_failed(999_999, RetriableSendError("gone")) is None


def test_reclaim_stuck_returns_old_processing_rows(queue, db_session, automation, make_items, clock):
    queue.enqueue(automation, make_items("One", "Two"), automation.destinations[:1])
    old_id, fresh_id = (entry.id for entry in _entries(db_session))
    _claim_one(queue, old_id)
    clock.advance(25 * 60)
    _claim_one(queue, fresh_id)
    clock.advance(6 * 60)

    assert queue.reclaim_stuck(timeout_seconds=30 * 60) == 1

    old = queue.get(old_id)
    assert old.status is DispatchStatus.PENDING
    assert old.claimed_by is None
    assert old.error_message == RECLAIMED_MESSAGE
    assert queue.get(fresh_id).status is DispatchStatus.PROCESSING


def test_release_claim_does_not_count_a_retry(queue, db_session, automation, make_items):
    queue.enqueue(automation, make_items("One"), automation.destinations[:1])
    entry_id = _claim_one(queue, _entries(db_session)[0].id)

    assert queue.release_claim(entry_id)

    entry = queue.get(entry_id)
    assert entry.status is DispatchStatus.PENDING
    assert entry.retry_count == 0


def test_pause_and_resume_entry(queue, db_session, automation, make_items):
    queue.enqueue(automation, make_items("One"), automation.destinations[:1])
    entry_id = _entries(db_session)[0].id

    paused = queue.pause_entry(entry_id)
    assert paused.status is DispatchStatus.SKIPPED
    assert paused.error_message == PAUSED_BY_USER

    with pytest.raises(InvalidTransitionError):
        queue.pause_entry(entry_id)

    resumed = queue.resume_entry(entry_id)
    assert resumed.status is DispatchStatus.PENDING
    assert resumed.error_message is None

    with pytest.raises(InvalidTransitionError):
        queue.resume_entry(entry_id)
    with pytest.raises(LookupError):
        queue.pause_entry(999_999)


def test_sent_entries_cannot_be_paused(queue, db_session, automation, make_items):
    queue.enqueue(automation, make_items("One"), automation.destinations[:1])
    entry_id = _claim_one(queue, _entries(db_session)[0].id)
    queue.mark_sent(entry_id, SendReceipt("wamid-9"))

    with pytest.raises(InvalidTransitionError):
        queue.pause_entry(entry_id)


def test_resume_returns_unapproved_entries_to_review(queue, db_session, automation, make_items):
    automation.approval_required = True
    db_session.flush()
    queue.enqueue(automation, make_items("One"), automation.destinations[:1])
    entry_id = _entries(db_session)[0].id
    queue.pause_entry(entry_id)

    assert queue.resume_entry(entry_id).status is DispatchStatus.AWAITING_APPROVAL


def test_pause_content_item_skips_every_destination(queue, db_session, automation, make_items):
    first, second = make_items("One", "Two")
    queue.enqueue(automation, [first, second])

    assert queue.pause_content_item(first.id) == 2

    skipped = _entries(db_session, content_item_id=first.id)
    assert {e.status for e in skipped} == {DispatchStatus.SKIPPED}
    assert {e.error_message for e in skipped} == {PAUSED_FOR_ITEM}
    assert {e.status for e in _entries(db_session, content_item_id=second.id)} == {
        DispatchStatus.PENDING
    }


def test_approve_and_approve_all(queue, db_session, automation, make_items):
    automation.approval_required = True
    db_session.flush()
    queue.enqueue(automation, make_items("One", "Two"))
    first, *rest = _entries(db_session)

    approved = queue.approve(first.id, "editor")
    assert approved.status is DispatchStatus.PENDING
    assert approved.approved_by == "editor"
    with pytest.raises(InvalidTransitionError):
        queue.approve(first.id, "editor")

    assert queue.approve_all(automation.id, "editor") == len(rest)
    assert queue.stats(automation.id)["awaiting_approval"] == 0


def test_retry_failed_resets_budget(queue, db_session, automation, make_items):
    queue.enqueue(automation, make_items("One"), automation.destinations[:1])
    entry_id = _claim_one(queue, _entries(db_session)[0].id)
    queue.mark_failed(entry_id, PermanentSendError("rejected"))

    assert queue.retry_failed(automation.id) == 1

    entry = queue.get(entry_id)
    assert entry.status is DispatchStatus.PENDING
    assert entry.failure_kind is None
    assert entry.retry_count == 0


def test_clear_only_deletes_unsent_statuses(queue, db_session, automation, make_items):
    queue.enqueue(automation, make_items("One"))
    sent_id = _claim_one(queue, _entries(db_session)[0].id)
    queue.mark_sent(sent_id, SendReceipt("wamid-2"))

    with pytest.raises(InvalidTransitionError):
        queue.clear(DispatchStatus.SENT)
    with pytest.raises(InvalidTransitionError):
        queue.clear(DispatchStatus.PROCESSING)

    assert queue.clear(DispatchStatus.PENDING) == 1
    assert [e.id for e in _entries(db_session)] == [sent_id]


def test_delete_entry_refuses_processing_rows(queue, db_session, automation, make_items):
    queue.enqueue(automation, make_items("One", "Two"), automation.destinations[:1])
    processing_id, pending_id = (e.id for e in _entries(db_session))
    _claim_one(queue, processing_id)

    with pytest.raises(InvalidTransitionError):
        queue.delete_entry(processing_id)
    queue.delete_entry(pending_id)

    assert [e.id for e in _entries(db_session)] == [processing_id]


def test_detach_automation_keeps_sent_history(queue, db_session, automation, make_items):
    queue.enqueue(automation, make_items("One"))
    sent_id = _claim_one(queue, _entries(db_session)[0].id)
    queue.mark_sent(sent_id, SendReceipt("wamid-3"))

    deleted, detached = queue.detach_automation(automation.id)
    db_session.commit()

    assert (deleted, detached) == (1, 1)
    remaining = _entries(db_session)
    assert [e.id for e in remaining] == [sent_id]
    assert remaining[0].automation_id is None


def test_queue_latest_revives_failed_and_leaves_sent(queue, db_session, automation, make_items):
    (item,) = make_items("One")
    queue.enqueue(automation, [item])
    sent, failed = _entries(db_session)
    _claim_one(queue, sent.id)
    queue.mark_sent(sent.id, SendReceipt("wamid-4"))
    _claim_one(queue, failed.id)
    queue.mark_failed(failed.id, PermanentSendError("rejected"))

    result = queue.queue_latest(automation, item)

    assert (result.queued, result.inserted, result.revived, result.skipped) == (1, 0, 1, 1)
    assert result.reason is None
    revived = queue.get(failed.id)
    assert revived.status is DispatchStatus.PENDING
    assert revived.failure_kind is None

    again = queue.queue_latest(automation, item)
    assert again.queued == 0
    assert again.reason == "Latest item is already queued or sent for every destination"


def test_queue_latest_inserts_missing_rows(queue, db_session, automation, make_items):
    (item,) = make_items("One")

    result = queue.queue_latest(automation, item)

    assert result.queued == 2
    assert len(_entries(db_session, content_item_id=item.id)) == 2


def test_enqueue_manual_stores_typed_options(queue, db_session, destinations):
    options = DeliveryOptions(disable_link_preview=True, image_url="https://cdn.example.com/a.png")

    entries = queue.enqueue_manual("Hello", destinations, options)

    assert len(entries) == 2
    stored = _entries(db_session)[0]
    assert stored.automation_id is None
    assert stored.content_item_id is None
    assert DeliveryOptions.from_column(stored.options) == options


def test_stats_and_list_entries(queue, db_session, automation, make_items):
    queue.enqueue(automation, make_items("One"))
    entry_id = _entries(db_session)[0].id
    queue.pause_entry(entry_id)

    stats = queue.stats()
    assert stats["pending"] == 1
    assert stats["skipped"] == 1
    assert stats["sent"] == 0
    assert set(stats) == {status.value for status in DispatchStatus}

    skipped = queue.list_entries(status=DispatchStatus.SKIPPED)
    assert [entry.id for entry in skipped] == [entry_id]
    assert len(queue.list_entries(automation_id=automation.id, limit=1)) == 1


@pytest.fixture()
def file_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'relay.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


def test_concurrent_enqueue_from_separate_sessions(file_engine, clock):
    with Session(file_engine, expire_on_commit=False) as setup:
        source = ContentSource(
            name="Wire", url="https://wire.example.com/feed.xml", fetch_interval_seconds=300
        )
        automation = Automation(
            name="Wire relay",
            state=AutomationState.ACTIVE,
            source=source,
            template=MessageTemplate(name="Plain", body="{{ title }}"),
            destinations=[
                Destination(name="Alerts", kind=DestinationKind.GROUP, address="120363-alerts@g.us"),
                Destination(name="Ops", kind=DestinationKind.CHANNEL, address="ops-updates"),
            ],
        )
        setup.add(automation)
        setup.commit()
        raw = [RawItem(title="Rates held", url="https://wire.example.com/rates")]
        (item,) = ContentStore(setup, clock=clock).ingest(source, raw).inserted
        automation_id, item_id = automation.id, item.id

    workers = 4
    barrier = threading.Barrier(workers)

    def enqueue_from_own_session(_):
        with Session(file_engine) as db:
            owner = db.get(Automation, automation_id)
            targets = list(owner.active_destinations)
            items = [db.get(ContentItem, item_id)]
            barrier.wait(timeout=10)
            return DispatchQueue(db, clock=clock).enqueue(owner, items, targets).inserted

    with ThreadPoolExecutor(max_workers=workers) as pool:
        inserted = list(pool.map(enqueue_from_own_session, range(workers)))

    with Session(file_engine) as check:
        rows = check.scalar(select(func.count(DispatchEntry.id)))
    assert sum(inserted) == 2
    assert rows == 2
