"""Alert intake and human action schemas."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pulsar_escalation.models.alert import AlertPriority, AlertStatus


class AlertCreate(BaseModel):
    """A new alert as received from a monitoring source."""

    source: str = Field(min_length=1, max_length=100)
    source_id: str | None = None
    priority: AlertPriority = AlertPriority.P3
    message: str = Field(min_length=1)
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    escalation_policy_id: uuid.UUID | None = None
    assigned_to_user_id: uuid.UUID | None = None
    assigned_to_team_id: uuid.UUID | None = None


class AlertResponse(BaseModel):
    """Alert with its escalation bookkeeping."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    organization_id: uuid.UUID
    source: str
    priority: AlertPriority
    status: AlertStatus
    message: str
    description: str | None
    tags: list[str]
    assigned_to_user_id: uuid.UUID | None
    assigned_to_team_id: uuid.UUID | None
    escalation_policy_id: uuid.UUID | None
    escalation_level: int
    escalation_repeat_count: int
    last_escalated_at: datetime | None
    escalation_completed_at: datetime | None
    snoozed_until: datetime | None
    close_reason: str | None
    created_at: datetime


class AlertIntakeResponse(BaseModel):
    """Result of alert intake."""

    alert: AlertResponse
    matched_rule_id: uuid.UUID | None
    suppressed: bool


class AlertAcknowledge(BaseModel):
    """Request schema for acknowledging an alert."""

    user_id: uuid.UUID


class AlertClose(BaseModel):
    """Request schema for closing an alert."""

    user_id: uuid.UUID | None = None
    reason: str | None = Field(default=None, max_length=1000)


class AlertSnooze(BaseModel):
    """Request schema for snoozing an alert."""

    until: datetime


class AlertPolicyAssign(BaseModel):
    """Request schema for (re)assigning an escalation policy."""

    escalation_policy_id: uuid.UUID | None
