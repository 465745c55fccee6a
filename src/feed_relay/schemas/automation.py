"""Automation-related Pydantic schemas."""

from __future__ import annotations

from datetime import datetime

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from feed_relay.models import AutomationState, DeliveryMode
from feed_relay.services.timing import normalize_delivery_mode, parse_batch_times, resolve_timezone


class AutomationResponse(BaseModel):
    """Schema for automation information returned by the API."""

    id: int
    name: str
    state: AutomationState
    delivery_mode: DeliveryMode
    batch_times: list[str]
    timezone: str
    cron_expression: str | None
    approval_required: bool
    source_id: int | None
    template_id: int | None
    last_queued_at: datetime | None
    last_dispatched_at: datetime | None
    next_run_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class AutomationStateUpdate(BaseModel):
    """Schema for changing an automation's lifecycle state."""

    state: AutomationState = Field(..., description="Target state")


class AutomationDeliveryUpdate(BaseModel):
    """Schema for changing how and when an automation delivers."""

    delivery_mode: DeliveryMode = Field(default=DeliveryMode.IMMEDIATE)
    batch_times: list[str] = Field(default_factory=list, description="Local HH:MM windows")
    timezone: str = Field(default="UTC", description="IANA time zone name")
    cron_expression: str | None = Field(default=None, description="5-field crontab")

    @field_validator("delivery_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: object) -> object:
        if value is None or isinstance(value, str):
            return normalize_delivery_mode(value)
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        resolve_timezone(value)
        return value

    @field_validator("cron_expression")
    @classmethod
    def _check_cron(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        CronTrigger.from_crontab(value.strip())
        return value.strip()

    @model_validator(mode="after")
    def _check_batch_times(self) -> AutomationDeliveryUpdate:
        if self.delivery_mode is DeliveryMode.BATCHED:
            self.batch_times = parse_batch_times(self.batch_times)
        return self


class EvaluationResponse(BaseModel):
    """Schema for one schedule evaluation."""

    automation_id: int
    due: bool
    enqueued: int
    items: int
    cursor: datetime | None
    reason: str | None

    model_config = ConfigDict(from_attributes=True)


class DispatchAllResponse(BaseModel):
    """Schema for the dispatch-all trigger."""

    evaluated: int
    enqueued: int
    results: list[EvaluationResponse]


class SendNowResponse(BaseModel):
    """Schema for the manual send-now trigger."""

    sent: int
    queued: int
    skipped: int
    reason: str | None

    model_config = ConfigDict(from_attributes=True)


class QueueLatestResponse(BaseModel):
    """Schema for the queue-latest trigger."""

    queued: int
    inserted: int
    revived: int
    skipped: int
    reason: str | None

    model_config = ConfigDict(from_attributes=True)


class StateChangeResponse(BaseModel):
    """Schema for a lifecycle change."""

    automation: AutomationResponse
    previous: AutomationState
    skipped_entries: int
    warning: str | None

    model_config = ConfigDict(from_attributes=True)


class DiagnosticsResponse(BaseModel):
    """Schema for per-automation diagnostics."""

    automation_id: int
    state: str
    running: bool
    can_send: bool
    session_connected: bool
    lease_owner: str | None
    template_renders: bool
    preview: str | None
    active_destinations: int
    counts: dict[str, int]
    exhausted: int
    last_queued_at: datetime | None
    next_run_at: datetime | None
    blocking_reasons: list[str]
    warnings: list[str]

    model_config = ConfigDict(from_attributes=True)
