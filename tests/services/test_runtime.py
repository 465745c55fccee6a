"""Tests for the background runtime wiring."""

from unittest.mock import AsyncMock

import pytest

from feed_relay.services.periodic import PeriodicTask
from feed_relay.services.runtime import Runtime
from feed_relay.services.session_keeper import SessionKeeper


@pytest.fixture()
def runtime(fake_sender, throttle):
    fetcher = AsyncMock()
    return Runtime(sender=fake_sender, fetcher=fetcher, throttle=throttle, instance_id="node-a")


def test_tasks_and_leader_gates(runtime):
    names = [task.name for task in runtime.tasks]
    gated = {task.name for task in runtime.tasks if task._gate is not None}

    assert names == ["session-keeper", "feed-poller", "schedule-tick", "dispatch-worker", "retry-sweep"]
    assert gated == {"feed-poller", "schedule-tick", "dispatch-worker"}
    assert all(task._gate() is False for task in runtime.tasks if task._gate is not None)

    runtime.keeper._leader = True
    assert all(task._gate() for task in runtime.tasks if task._gate is not None)


def test_components_share_the_instance_id(runtime):
    assert runtime.keeper.instance_id == "node-a"
    assert runtime.worker.instance_id == "node-a"


@pytest.mark.asyncio
async def test_start_and_stop(runtime, mocker):
    start = mocker.patch.object(PeriodicTask, "start")
    stop = mocker.patch.object(PeriodicTask, "stop")
    shutdown = mocker.patch.object(SessionKeeper, "shutdown")

    await runtime.start()
    await runtime.start()
    assert runtime.started
    assert start.await_count == 5

    await runtime.stop()

    assert not runtime.started
    assert stop.await_count == 5
    shutdown.assert_awaited_once()
    runtime.fetcher.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_stop_before_start_does_nothing(runtime, mocker):
    shutdown = mocker.patch.object(SessionKeeper, "shutdown")

    await runtime.stop()

    shutdown.assert_not_awaited()
