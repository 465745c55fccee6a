"""Explicit background tasks with their own cancellation handles."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from feed_relay.core.errors import FeedRelayError

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]
Interval = float | Callable[[], float]


class PeriodicTask:
    """Run ``job`` every ``interval`` seconds until stopped.

    ``interval`` may be a callable so a job can choose its next delay (the
    session keeper uses this for jittered backoff). ``gate`` is checked
    before every run; while it returns False the job is skipped.
    """

    def __init__(
        self,
        name: str,
        job: Job,
        interval: Interval,
        *,
        gate: Callable[[], bool] | None = None,
    ) -> None:
        self.name = name
        self._job = job
        self._interval = interval
        self._gate = gate
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _next_delay(self) -> float:
        value = self._interval() if callable(self._interval) else self._interval
        return max(0.1, float(value))

    async def start(self) -> None:
        """Start the loop; a running task is left alone."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self, timeout: float = 10.0) -> None:
        """Signal the loop to exit and wait for it, cancelling after ``timeout``."""
        if self._task is None:
            return

        self._stopping.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Task %s did not stop in %.1fs; cancelled", self.name, timeout)
        self._task = None

    async def run_once(self) -> bool:
        """Run the job once if the gate allows it.

        Expected failures are logged and reported as False so one bad tick
        never ends the loop.
        """
        if self._gate is not None and not self._gate():
            return True
        try:
            await self._job()
        except (FeedRelayError, SQLAlchemyError) as e:
            logger.warning("Task %s failed: %s", self.name, e)
        except (OSError, ConnectionError, TimeoutError) as e:
            logger.warning("Task %s encountered network error: %s", self.name, e)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.error("Task %s encountered data processing error: %s", self.name, e, exc_info=True)
        else:
            self.runs += 1
            return True
        self.failures += 1
        return False

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run(self) -> None:
        while not self._stopping.is_set():
            ok = await self.run_once()
            delay = self._next_delay()
            if not ok:
                delay = min(delay * 4, 30.0)
            await self._sleep(delay)
