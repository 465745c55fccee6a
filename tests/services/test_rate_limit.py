"""Tests for send pacing."""

import pytest

from feed_relay.services.rate_limit import SendThrottle


class ManualClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def monotonic():
    return ManualClock()


@pytest.fixture()
def sleeps():
    return []


@pytest.fixture()
def paced(monotonic, sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)
        monotonic.now += seconds

    return SendThrottle(
        global_delay_seconds=2.0,
        destination_delay_seconds=10.0,
        eviction_seconds=60.0,
        max_entries=3,
        clock=monotonic,
        sleep=_sleep,
    )


def test_first_send_goes_immediately(paced):
    assert paced.wait_time("group-a") == 0.0


def test_global_gap_applies_across_destinations(paced, monotonic):
    paced.record("group-a")
    monotonic.now += 0.5

    assert paced.wait_time("group-b") == pytest.approx(1.5)


def test_destination_gap_and_override(paced, monotonic):
    paced.record("group-a")
    monotonic.now += 3

    assert paced.wait_time("group-a") == pytest.approx(7.0)
    assert paced.wait_time("group-a", min_delay=5.0) == pytest.approx(2.0)
    assert paced.wait_time("group-b") == 0.0


@pytest.mark.asyncio
async def test_acquire_sleeps_then_records(paced, sleeps):
    assert await paced.acquire("group-a") == 0.0
    waited = await paced.acquire("group-a")

    assert waited == pytest.approx(10.0)
    assert sleeps == [pytest.approx(10.0)]
    assert paced.wait_time("group-a") == pytest.approx(10.0)


def test_stale_entries_are_evicted(paced, monotonic):
    paced.record("group-a")
    monotonic.now += 61
    paced.record("group-b")

    assert len(paced) == 1
    assert paced.wait_time("group-a") == pytest.approx(2.0)


def test_entry_count_is_capped(paced):
    for key in ("a", "b", "c", "d", "e"):
        paced.record(key)

    assert len(paced) == 3
    assert paced.evict() == 0


def test_destination_lock_is_shared_per_key(paced):
    assert paced.destination_lock("a") is paced.destination_lock("a")
    assert paced.destination_lock("a") is not paced.destination_lock("b")
