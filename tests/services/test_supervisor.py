"""Tests for the retry sweep and stuck-row watchdog."""

import pytest
from sqlalchemy import select, update

from feed_relay.core.errors import PermanentSendError, RetriableSendError
from feed_relay.models import DispatchEntry, DispatchStatus
from feed_relay.services.dispatch_queue import DispatchQueue
from feed_relay.services.supervisor import RetrySupervisor


@pytest.fixture()
def supervisor(db_session, clock):
    return RetrySupervisor(
        db_session=db_session,
        clock=clock,
        max_retries=2,
        processing_timeout_seconds=600,
    )


def _ids(db_session):
    return list(db_session.scalars(select(DispatchEntry.id).order_by(DispatchEntry.id)))


def test_sweep_requeues_reclaims_and_counts(supervisor, db_session, clock, automation, make_items):
    queue = DispatchQueue(db_session, clock=clock)
    queue.enqueue(automation, make_items("One", "Two"))
    retriable, permanent, exhausted, stuck = _ids(db_session)

    for entry_id in (retriable, permanent, exhausted, stuck):
        assert queue.claim(entry_id, "worker-1")
    queue.mark_failed(retriable, RetriableSendError("timeout"), max_retries=2)
    queue.mark_failed(permanent, PermanentSendError("blocked"), max_retries=2)
    queue.mark_failed(exhausted, RetriableSendError("timeout"), max_retries=2)
    db_session.execute(
        update(DispatchEntry).where(DispatchEntry.id == exhausted).values(retry_count=2)
    )
    db_session.commit()
    clock.advance(601)

    result = supervisor.sweep()

    assert result.requeued == 1
    assert result.reclaimed == 1
    assert result.exhausted == 2
    assert queue.get(retriable).status is DispatchStatus.PENDING
    assert queue.get(stuck).status is DispatchStatus.PENDING
    assert queue.get(permanent).status is DispatchStatus.FAILED


def test_sweep_on_empty_queue(supervisor):
    result = supervisor.sweep()

    assert (result.requeued, result.reclaimed, result.exhausted) == (0, 0, 0)


@pytest.mark.asyncio
async def test_tick_runs_a_sweep(supervisor, mocker):
    sweep = mocker.patch.object(supervisor, "sweep")

    await supervisor.tick()

    sweep.assert_called_once_with()
