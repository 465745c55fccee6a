"""Send pacing shared by every dispatch path in the process.

One SendThrottle is built at startup and injected wherever messages are sent.
It enforces a global minimum gap between any two sends and a per-destination
gap, and serializes sends to the same destination. Its clock and sleep are
injectable so pacing can be tested without waiting.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable

from feed_relay.core.settings import settings

logger = logging.getLogger(__name__)

MonotonicClock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class SendThrottle:
    """Global and per-destination minimum delays between sends.

    ``_last_sent`` maps destination keys to the monotonic time of their last
    send, oldest first. Entries older than the eviction horizon are dropped,
    and the map never grows past ``max_entries``.
    """

    def __init__(
        self,
        *,
        global_delay_seconds: float | None = None,
        destination_delay_seconds: float | None = None,
        eviction_seconds: float | None = None,
        max_entries: int | None = None,
        clock: MonotonicClock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.global_delay = (
            settings.global_send_delay_seconds
            if global_delay_seconds is None
            else global_delay_seconds
        )
        self.destination_delay = (
            settings.destination_send_delay_seconds
            if destination_delay_seconds is None
            else destination_delay_seconds
        )
        self.eviction_seconds = (
            settings.throttle_eviction_seconds if eviction_seconds is None else eviction_seconds
        )
        self.max_entries = settings.throttle_max_entries if max_entries is None else max_entries
        self._clock = clock
        self._sleep = sleep
        self._last_global: float | None = None
        self._last_sent: OrderedDict[str, float] = OrderedDict()
        self._destination_locks: dict[str, asyncio.Lock] = {}
        self._global_lock = asyncio.Lock()

    def wait_time(self, key: str, min_delay: float | None = None) -> float:
        """Return how long a send to ``key`` must wait right now.

        Args:
            key: Destination throttle key
            min_delay: Per-destination override of the configured delay

        Returns:
            Seconds to wait; 0.0 when the send may go immediately
        """
        now = self._clock()
        waits = [0.0]
        if self._last_global is not None:
            waits.append(self._last_global + self.global_delay - now)
        last = self._last_sent.get(key)
        if last is not None:
            delay = self.destination_delay if min_delay is None else min_delay
            waits.append(last + delay - now)
        return max(waits)

    def record(self, key: str) -> None:
        """Mark a send to ``key`` as happening now."""
        now = self._clock()
        self._last_global = now
        self._last_sent[key] = now
        self._last_sent.move_to_end(key)
        self.evict()

    def evict(self) -> int:
        """Drop stale destination entries; return how many were removed."""
        now = self._clock()
        removed = 0
        while self._last_sent:
            key, stamp = next(iter(self._last_sent.items()))
            expired = now - stamp > self.eviction_seconds
            if not expired and len(self._last_sent) <= self.max_entries:
                break
            self._last_sent.popitem(last=False)
            lock = self._destination_locks.get(key)
            if lock is not None and not lock.locked():
                del self._destination_locks[key]
            removed += 1
        if removed:
            logger.debug("Evicted %d throttle entries", removed)
        return removed

    def destination_lock(self, key: str) -> asyncio.Lock:
        """Return the lock that serializes sends to one destination."""
        lock = self._destination_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._destination_locks[key] = lock
        return lock

    async def acquire(self, key: str, min_delay: float | None = None) -> float:
        """Wait until a send to ``key`` is allowed and record it.

        Callers hold :meth:`destination_lock` around the acquire and the send
        itself so sends to one destination never overlap.

        Returns:
            Seconds actually waited
        """
        async with self._global_lock:
            waited = self.wait_time(key, min_delay)
            if waited > 0:
                await self._sleep(waited)
            self.record(key)
            return waited

    def __len__(self) -> int:
        return len(self._last_sent)


_throttle: SendThrottle | None = None


def get_send_throttle() -> SendThrottle:
    """Return the process-wide throttle, creating it on first use."""
    global _throttle
    if _throttle is None:
        _throttle = SendThrottle()
    return _throttle
