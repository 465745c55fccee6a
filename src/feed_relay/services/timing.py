"""Delivery timing helpers: delivery modes, batch windows and cron fire times.

Batch windows are local ``HH:MM`` times in the automation's zone; a window is
open while local time is within the grace minutes of it.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from datetime import time as dt_time
from typing import Any

import pytz
from apscheduler.triggers.cron import CronTrigger

from feed_relay.core.settings import settings
from feed_relay.models import DeliveryMode

_BATCH_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
MINUTES_PER_DAY = 24 * 60


def normalize_delivery_mode(value: DeliveryMode | str | None) -> DeliveryMode:
    """Map stored or user supplied delivery modes onto :class:`DeliveryMode`.

    ``"batch"`` is accepted as an alias of ``"batched"``; a missing value
    means immediate delivery.

    Raises:
        ValueError: For unknown modes
    """
    if value is None:
        return DeliveryMode.IMMEDIATE
    if isinstance(value, DeliveryMode):
        return value
    normalized = value.strip().lower()
    if normalized in ("batch", "batched"):
        return DeliveryMode.BATCHED
    if normalized in ("", "immediate"):
        return DeliveryMode.IMMEDIATE
    raise ValueError(f"Unknown delivery mode: {value!r}")


def parse_batch_times(values: Iterable[str] | None) -> list[str]:
    """Validate ``HH:MM`` window times and return them sorted.

    An empty or missing list falls back to the configured default windows.

    Raises:
        ValueError: On malformed or duplicate times
    """
    times = [value.strip() for value in (values or [])]
    if not times:
        return sorted(settings.default_batch_times)
    for value in times:
        if not _BATCH_TIME_RE.match(value):
            raise ValueError(f"Invalid batch time {value!r}; expected HH:MM")
    if len(set(times)) != len(times):
        raise ValueError("Batch times must not contain duplicates")
    return sorted(times)


def resolve_timezone(name: str | None) -> Any:
    """Return the pytz zone for ``name``.

    Raises:
        ValueError: If the zone name is unknown
    """
    try:
        return pytz.timezone(name or settings.default_timezone)
    except pytz.exceptions.UnknownTimeZoneError as exc:
        raise ValueError(f"Unknown timezone: {name!r}") from exc


def _minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def minute_of_day(now: datetime, tz: Any) -> int:
    """Return minutes since local midnight of ``now`` in ``tz``."""
    local = now.astimezone(tz)
    return local.hour * 60 + local.minute


def is_within_batch_window(
    now: datetime,
    batch_times: Sequence[str],
    tz: Any,
    grace_minutes: int | None = None,
) -> bool:
    """Return True when local ``now`` is within the grace of any window.

    Distances wrap around midnight, so 23:58 is within the grace of 00:00.
    """
    grace = settings.batch_grace_minutes if grace_minutes is None else grace_minutes
    current = minute_of_day(now, tz)
    for value in batch_times:
        distance = abs(current - _minutes(value))
        distance = min(distance, MINUTES_PER_DAY - distance)
        if distance <= grace:
            return True
    return False


def next_batch_window(now: datetime, batch_times: Sequence[str], tz: Any) -> datetime | None:
    """Return the next window start at or after ``now``, in UTC."""
    if not batch_times:
        return None
    local_today = now.astimezone(tz).date()
    candidates = []
    for day_offset in (0, 1):
        day = local_today + timedelta(days=day_offset)
        for value in batch_times:
            minutes = _minutes(value)
            naive = datetime.combine(day, dt_time(minutes // 60, minutes % 60))
            candidates.append(tz.localize(naive).astimezone(pytz.UTC))
    upcoming = [candidate for candidate in candidates if candidate >= now]
    return min(upcoming) if upcoming else None


def next_cron_fire(expression: str, tz: Any, after: datetime) -> datetime | None:
    """Return the first cron fire time strictly after ``after``, in UTC.

    Raises:
        ValueError: If the expression is not a valid 5-field crontab
    """
    trigger = CronTrigger.from_crontab(expression, timezone=tz)
    fire_at = trigger.get_next_fire_time(None, after + timedelta(microseconds=1))
    return fire_at.astimezone(pytz.UTC) if fire_at is not None else None
