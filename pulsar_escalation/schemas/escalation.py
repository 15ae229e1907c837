"""Escalation schemas: per-target channel overrides and API responses."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from pulsar_escalation.models.notification import ChannelType


class TargetNotificationConfig(BaseModel):
    """Stored on EscalationTarget.notification_channels.

    An empty channel list means "use each recipient's own preferences".
    """

    channels: list[ChannelType] = Field(default_factory=list)
    urgent: bool = False


class EscalationEventResponse(BaseModel):
    """Single escalation event response."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    alert_id: uuid.UUID
    rule_id: uuid.UUID | None
    event_type: str
    level: int
    repeat_count: int
    recipients_notified: list[str]
    reason: str | None
    triggered_at: datetime


class NotificationLogResponse(BaseModel):
    """Single notification attempt."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    channel: str | None
    escalation_level: int
    status: str
    reason: str | None
    error_message: str | None
    created_at: datetime


class EscalationTimelineResponse(BaseModel):
    """Escalation timeline for an alert."""

    alert_id: uuid.UUID
    status: str
    escalation_level: int
    escalation_repeat_count: int
    events: list[EscalationEventResponse]
    notifications: list[NotificationLogResponse]
    count: int


class AlertOutcomeResponse(BaseModel):
    """What a tick did with one alert."""

    alert_id: uuid.UUID
    outcome: str
    reason: str | None = None


class TickReportResponse(BaseModel):
    """Summary of one escalation tick."""

    started_at: datetime
    finished_at: datetime
    candidates: int
    advanced: int
    exhausted: int
    not_due: int
    skipped: int
    failed: int
    notifications_sent: int
    notifications_suppressed: int
    notifications_failed: int
    outcomes: list[AlertOutcomeResponse]
