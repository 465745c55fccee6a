"""Tests for the background task runner."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from feed_relay.core.errors import FeedFetchError
from feed_relay.services.periodic import PeriodicTask


@pytest.mark.asyncio
async def test_closed_gate_skips_the_job():
    job = AsyncMock()
    task = PeriodicTask("gated", job, 1.0, gate=lambda: False)

    assert await task.run_once()

    job.assert_not_awaited()
    assert task.runs == 0


@pytest.mark.asyncio
async def test_successful_run_is_counted():
    job = AsyncMock()
    task = PeriodicTask("ok", job, 1.0, gate=lambda: True)

    assert await task.run_once()

    job.assert_awaited_once()
    assert (task.runs, task.failures) == (1, 0)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        FeedFetchError("HTTP 503"),
        OperationalError("SELECT 1", {}, Exception("database is locked")),
        ConnectionError("reset"),
        ValueError("bad data"),
    ],
)
async def test_expected_failures_do_not_escape(error):
    task = PeriodicTask("flaky", AsyncMock(side_effect=error), 1.0)

    assert not await task.run_once()
    assert task.failures == 1


@pytest.mark.asyncio
async def test_unexpected_errors_propagate():
    task = PeriodicTask("broken", AsyncMock(side_effect=RuntimeError("bug")), 1.0)

    with pytest.raises(RuntimeError):
        await task.run_once()


def test_interval_may_be_callable_and_is_floored():
    assert PeriodicTask("a", AsyncMock(), lambda: 7.5)._next_delay() == 7.5
    assert PeriodicTask("b", AsyncMock(), 0)._next_delay() == 0.1


@pytest.mark.asyncio
async def test_start_runs_until_stopped():
    ran = asyncio.Event()

    async def job():
        ran.set()

    task = PeriodicTask("loop", job, 60.0)
    await task.start()
    assert task.running

    await asyncio.wait_for(ran.wait(), timeout=1.0)
    await task.stop(timeout=1.0)

    assert not task.running
    assert task.runs == 1


@pytest.mark.asyncio
async def test_stop_without_start_is_a_no_op():
    task = PeriodicTask("idle", AsyncMock(), 1.0)

    await task.stop()

    assert not task.running
