"""Background runtime: every periodic job of one instance, started as a unit."""

from __future__ import annotations

import asyncio
import logging

from feed_relay.core.settings import settings
from feed_relay.db.session import SessionLocal
from feed_relay.services.dispatcher import DispatchWorker
from feed_relay.services.feed_fetcher import FeedFetcher, HttpFeedFetcher
from feed_relay.services.feed_poller import FeedPoller
from feed_relay.services.periodic import PeriodicTask
from feed_relay.services.rate_limit import SendThrottle, get_send_throttle
from feed_relay.services.schedule_engine import ScheduleEngine
from feed_relay.services.sender import MessageSender, get_message_sender
from feed_relay.services.session_keeper import SessionKeeper
from feed_relay.services.supervisor import RetrySupervisor

logger = logging.getLogger(__name__)


def _evaluate_schedules() -> None:
    with SessionLocal() as db:
        ScheduleEngine(db).evaluate_all()


class Runtime:
    """Own the lease keeper, feed poller, schedule tick, dispatch worker and sweep.

    Jobs that touch the messaging session or feeds only run while this
    instance holds the lease. The retry sweep runs everywhere; its updates
    are conditional.
    """

    def __init__(
        self,
        *,
        sender: MessageSender | None = None,
        fetcher: FeedFetcher | None = None,
        throttle: SendThrottle | None = None,
        instance_id: str | None = None,
    ) -> None:
        self.instance_id = instance_id or settings.instance_id
        self.sender = sender or get_message_sender()
        self.fetcher = fetcher or HttpFeedFetcher()
        self.throttle = throttle or get_send_throttle()

        self.keeper = SessionKeeper(self.sender, instance_id=self.instance_id)
        self.poller = FeedPoller(self.fetcher)
        self.worker = DispatchWorker(self.sender, self.throttle, instance_id=self.instance_id)
        self.supervisor = RetrySupervisor()

        leader = self.keeper.is_leader
        self.tasks = [
            PeriodicTask("session-keeper", self.keeper.tick, self.keeper.next_delay),
            PeriodicTask(
                "feed-poller",
                self.poller.tick,
                settings.feed_poll_interval_seconds,
                gate=leader,
            ),
            PeriodicTask(
                "schedule-tick",
                self.evaluate_schedules,
                settings.schedule_tick_seconds,
                gate=leader,
            ),
            PeriodicTask(
                "dispatch-worker",
                self.worker.tick,
                settings.dispatch_interval_seconds,
                gate=leader,
            ),
            PeriodicTask("retry-sweep", self.supervisor.tick, settings.retry_sweep_interval_seconds),
        ]
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def evaluate_schedules(self) -> None:
        """Run one schedule evaluation off the event loop."""
        await asyncio.to_thread(_evaluate_schedules)

    async def start(self) -> None:
        """Start every periodic task."""
        if self._started:
            return
        for task in self.tasks:
            await task.start()
        self._started = True
        logger.info("Runtime started for instance %s", self.instance_id)

    async def stop(self) -> None:
        """Stop every task, then release the session and close clients."""
        if not self._started:
            return
        for task in reversed(self.tasks):
            await task.stop(timeout=settings.task_stop_timeout_seconds)
        await self.keeper.shutdown()
        close = getattr(self.fetcher, "close", None)
        if close is not None:
            await close()
        self._started = False
        logger.info("Runtime stopped for instance %s", self.instance_id)
