"""System status and configuration endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from feed_relay.core.settings import settings
from feed_relay.services.dispatch_queue import DispatchQueue
from feed_relay.services.lease import LeaseManager

from ..dependencies import SenderDep, SessionDep, ThrottleDep

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/config")
async def get_public_config() -> dict[str, object]:
    """Return a sanitized snapshot of runtime configuration.

    Excludes secrets and connection strings.

    Returns:
        Dictionary of lease, scheduling, dispatch and pacing settings
    """
    return {
        "app": {
            "name": settings.app_name,
            "version": settings.app_version,
            "debug": settings.debug,
            "instance_id": settings.instance_id,
        },
        "lease": {
            "resource": settings.lease_resource,
            "ttl_seconds": settings.lease_ttl_seconds,
            "poll_interval_seconds": settings.lease_poll_interval_seconds,
        },
        "schedule": {
            "enabled": settings.schedulers_enabled,
            "tick_seconds": settings.schedule_tick_seconds,
            "max_items_per_tick": settings.max_items_per_tick,
            "batch_grace_minutes": settings.batch_grace_minutes,
            "default_batch_times": settings.default_batch_times,
            "default_timezone": settings.default_timezone,
        },
        "dispatch": {
            "interval_seconds": settings.dispatch_interval_seconds,
            "batch_size": settings.dispatch_batch_size,
            "max_retries": settings.max_retries,
            "processing_timeout_minutes": settings.processing_timeout_minutes,
            "send_timeout_seconds": settings.send_timeout_seconds,
        },
        "pacing": {
            "global_send_delay_seconds": settings.global_send_delay_seconds,
            "destination_send_delay_seconds": settings.destination_send_delay_seconds,
        },
        "feeds": {
            "poll_interval_seconds": settings.feed_poll_interval_seconds,
            "min_interval_seconds": settings.feed_min_interval_seconds,
            "allow_private_urls": settings.allow_private_urls,
        },
        "gateway": {"enabled": bool(settings.sender_gateway_url)},
    }


@router.get("/health")
async def system_health(
    db: SessionDep, sender: SenderDep, throttle: ThrottleDep
) -> dict[str, Any]:
    """Report database reachability, lease state, queue counts and gateway health."""
    try:
        db.execute(text("SELECT 1"))
        database = {"status": "healthy"}
    except SQLAlchemyError as exc:
        database = {"status": "error", "error": str(exc)}
        return {"database": database}

    lease = LeaseManager(db).get_info()
    health_check = getattr(sender, "health_check", None)
    gateway = await health_check() if health_check is not None else {"status": "unknown"}
    return {
        "database": database,
        "lease": {
            "owner_id": lease.owner_id,
            "status": lease.status.value,
            "live": lease.live,
        },
        "sender": {"status": sender.status.value, "gateway": gateway},
        "queue": DispatchQueue(db).stats(),
        "throttle": {"tracked_destinations": len(throttle)},
    }
