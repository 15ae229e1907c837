"""On-call resolution and schedule mutation schemas."""

import uuid
from datetime import date, datetime, time

from pydantic import BaseModel, ConfigDict, Field, model_validator

from pulsar_escalation.core.timezones import ensure_utc
from pulsar_escalation.models.schedule import RotationType


class OnCallAssignment(BaseModel):
    """Who is on call and for which interval."""

    user_id: uuid.UUID
    start: datetime
    end: datetime | None
    is_override: bool


class OnCallResponse(BaseModel):
    """Result of resolving a schedule at an instant; on_call is null when nobody is."""

    schedule_id: uuid.UUID
    at: datetime
    on_call: OnCallAssignment | None


class OnCallTimelineResponse(BaseModel):
    """Successive on-call assignments across a window."""

    schedule_id: uuid.UUID
    start: datetime
    end: datetime
    entries: list[OnCallAssignment]


class RotationCreate(BaseModel):
    """Request schema for adding a rotation to a schedule."""

    name: str = Field(min_length=1, max_length=255)
    rotation_type: RotationType
    rotation_length: int = Field(default=1, ge=1)
    start_date: date
    start_time: time = time(0, 0)
    end_time: time | None = None
    handoff_day: int | None = Field(
        default=None,
        ge=0,
        le=6,
        description="Weekday of the hand-off for weekly rotations (0=Sunday).",
    )
    handoff_time: time | None = None
    participant_user_ids: list[uuid.UUID] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_participants_unique(self) -> "RotationCreate":
        """A user can appear only once in a rotation."""
        if len(set(self.participant_user_ids)) != len(self.participant_user_ids):
            msg = "participant_user_ids must not contain duplicates"
            raise ValueError(msg)
        return self


class OverrideCreate(BaseModel):
    """Request schema for an on-call override."""

    user_id: uuid.UUID
    start_time: datetime
    end_time: datetime
    note: str | None = None

    @model_validator(mode="after")
    def validate_interval(self) -> "OverrideCreate":
        """Ensure the override ends after it starts."""
        if ensure_utc(self.end_time) <= ensure_utc(self.start_time):
            msg = "end_time must be after start_time"
            raise ValueError(msg)
        return self


class RotationParticipantResponse(BaseModel):
    """Participant of a rotation."""

    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    position: int


class RotationResponse(BaseModel):
    """Stored rotation."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    schedule_id: uuid.UUID
    name: str
    rotation_type: RotationType
    rotation_length: int
    start_date: date
    start_time: time
    end_time: time | None
    handoff_day: int | None
    handoff_time: time | None
    participants: list[RotationParticipantResponse]


class ParticipantReorder(BaseModel):
    """New participant order for a rotation."""

    user_ids: list[uuid.UUID] = Field(min_length=1)


class OverrideResponse(BaseModel):
    """Stored override."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    schedule_id: uuid.UUID
    user_id: uuid.UUID
    start_time: datetime
    end_time: datetime
    note: str | None
    created_at: datetime
