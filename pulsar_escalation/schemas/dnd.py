"""Do-not-disturb schedule documents stored on UserDNDSettings."""

import enum
from datetime import datetime, time

from pydantic import BaseModel, Field, model_validator


class Weekday(str, enum.Enum):
    """Day names accepted in weekly DND slots."""

    SUNDAY = "sunday"
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"

    @property
    def iso_index(self) -> int:
        """Python weekday number (Monday=0 .. Sunday=6)."""
        return _ISO_INDEX[self]


_ISO_INDEX = {
    Weekday.MONDAY: 0,
    Weekday.TUESDAY: 1,
    Weekday.WEDNESDAY: 2,
    Weekday.THURSDAY: 3,
    Weekday.FRIDAY: 4,
    Weekday.SATURDAY: 5,
    Weekday.SUNDAY: 6,
}


class DNDWeeklySlot(BaseModel):
    """Recurring quiet hours on one weekday.

    The slot is half-open [start, end) in the schedule's time zone. When
    end is not after start the slot runs overnight and ends on the
    following day.
    """

    day: Weekday
    start: time
    end: time

    @property
    def overnight(self) -> bool:
        return self.end <= self.start


class DNDSchedule(BaseModel):
    """Weekly quiet hours and the zone they are expressed in."""

    timezone: str = "UTC"
    weekly: list[DNDWeeklySlot] = Field(default_factory=list)


class DNDOverride(BaseModel):
    """An absolute quiet interval [start, end), e.g. a vacation."""

    start: datetime
    end: datetime
    reason: str | None = None

    @model_validator(mode="after")
    def validate_interval(self) -> "DNDOverride":
        """Ensure the override ends after it starts."""
        if self.end <= self.start:
            msg = "DND override end must be after start"
            raise ValueError(msg)
        return self
