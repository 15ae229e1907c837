"""Rotation resolution.

Works out which participant of a rotation is on call at a given instant.
All arithmetic happens in the schedule's local wall-clock time so that
hand-offs stay at the same local time across DST transitions; results are
converted back to UTC.

Cycle boundaries: the anchor is the first hand-off moment at or after
the rotation start, or the start itself when no hand-off is configured.
Cycle k covers [anchor + k * period, anchor + (k + 1) * period), where
period is rotation_length units; the lead-in between the start and the
anchor is folded into cycle 0.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, time, timedelta, tzinfo

from pulsar_escalation.core.errors import RotationConfigError
from pulsar_escalation.core.timezones import from_local, to_local
from pulsar_escalation.logging_config import get_logger
from pulsar_escalation.models.schedule import RotationType, ScheduleRotation

logger = get_logger(__name__)

_UNIT_DAYS = {
    RotationType.DAILY: 1,
    RotationType.WEEKLY: 7,
    RotationType.CUSTOM: 1,
}


@dataclass(frozen=True)
class RotationSlot:
    """The participant covering an instant and the interval they cover."""

    participant_index: int
    user_id: uuid.UUID
    start: datetime
    end: datetime


def validate_rotation_config(
    rotation_type: RotationType | str,
    rotation_length: int,
    handoff_day: int | None = None,
) -> RotationType:
    """Validate rotation parameters before they are stored.

    Args:
        rotation_type: daily, weekly or custom
        rotation_length: Units per participant turn
        handoff_day: Hand-off weekday (0=Sunday), weekly rotations only

    Returns:
        The parsed rotation type

    Raises:
        RotationConfigError: If any parameter cannot be resolved
    """
    try:
        parsed = RotationType(rotation_type)
    except ValueError as e:
        raise RotationConfigError(f"Unknown rotation type: {rotation_type!r}") from e

    if rotation_length is None or rotation_length < 1:
        raise RotationConfigError(
            f"rotation_length must be at least 1 (got {rotation_length})"
        )

    if handoff_day is not None:
        if parsed is not RotationType.WEEKLY:
            raise RotationConfigError("handoff_day is only valid for weekly rotations")
        if not 0 <= handoff_day <= 6:
            raise RotationConfigError(
                f"handoff_day must be between 0 (Sunday) and 6 (got {handoff_day})"
            )

    return parsed


def _cycle_length(rotation_type: RotationType, rotation_length: int) -> timedelta:
    return timedelta(days=_UNIT_DAYS[rotation_type] * rotation_length)


def _first_handoff(
    rotation: ScheduleRotation,
    rotation_type: RotationType,
    start_local: datetime,
) -> datetime:
    """First local hand-off moment at or after the rotation start."""
    if rotation.handoff_time is None and rotation.handoff_day is None:
        return start_local

    handoff_time = rotation.handoff_time or rotation.start_time or time(0, 0)
    candidate = datetime.combine(start_local.date(), handoff_time)

    if rotation_type is RotationType.WEEKLY and rotation.handoff_day is not None:
        # Stored weekday is 0=Sunday; Python's is 0=Monday
        target_weekday = (rotation.handoff_day + 6) % 7
        candidate += timedelta(days=(target_weekday - candidate.weekday()) % 7)
        if candidate < start_local:
            candidate += timedelta(days=7)
    elif candidate < start_local:
        candidate += timedelta(days=1)

    return candidate


def _coverage_window(
    local_at: datetime,
    start_time: time,
    end_time: time,
) -> tuple[datetime, datetime] | None:
    """Daily coverage window [start_time, end_time) containing local_at.

    Windows with end_time <= start_time run overnight into the next day.
    Returns None when local_at falls outside every window.
    """
    day = local_at.date()

    if start_time < end_time:
        window_start = datetime.combine(day, start_time)
        window_end = datetime.combine(day, end_time)
        if window_start <= local_at < window_end:
            return window_start, window_end
        return None

    window_start = datetime.combine(day, start_time)
    if local_at >= window_start:
        return window_start, datetime.combine(day + timedelta(days=1), end_time)

    window_end = datetime.combine(day, end_time)
    if local_at < window_end:
        return datetime.combine(day - timedelta(days=1), start_time), window_end

    return None


def _has_daily_window(rotation: ScheduleRotation) -> bool:
    return rotation.end_time is not None and rotation.end_time != rotation.start_time


def _parse_stored(rotation: ScheduleRotation) -> RotationType | None:
    """Parse a stored rotation, logging and returning None if it is malformed."""
    try:
        return validate_rotation_config(
            rotation.rotation_type,
            rotation.rotation_length,
            rotation.handoff_day
            if rotation.rotation_type == RotationType.WEEKLY
            else None,
        )
    except RotationConfigError as e:
        logger.error(
            "Skipping malformed rotation",
            rotation_id=str(rotation.id),
            error=str(e),
        )
        return None


def resolve_rotation(
    rotation: ScheduleRotation,
    at: datetime,
    zone: tzinfo,
) -> RotationSlot | None:
    """Resolve which participant of a rotation covers an instant.

    Never raises: malformed rotations and rotations without participants
    resolve to None.

    Args:
        rotation: Rotation with its participants loaded
        at: Instant to resolve (aware, any zone)
        zone: The owning schedule's time zone

    Returns:
        RotationSlot for the covering participant, or None if nobody in
        this rotation covers the instant
    """
    rotation_type = _parse_stored(rotation)
    if rotation_type is None:
        return None

    participants = sorted(rotation.participants, key=lambda p: p.position)
    if not participants:
        return None

    start_local = datetime.combine(
        rotation.start_date, rotation.start_time or time(0, 0)
    )
    local_at = to_local(at, zone)
    if local_at < start_local:
        return None

    period = _cycle_length(rotation_type, rotation.rotation_length)
    anchor = _first_handoff(rotation, rotation_type, start_local)

    cycle = max(0, (local_at - anchor) // period)
    cycle_start = start_local if cycle == 0 else anchor + cycle * period
    cycle_end = anchor + (cycle + 1) * period

    slot_start, slot_end = cycle_start, cycle_end
    if _has_daily_window(rotation):
        window = _coverage_window(local_at, rotation.start_time, rotation.end_time)
        if window is None:
            return None
        slot_start = max(slot_start, window[0])
        slot_end = min(slot_end, window[1])

    index = cycle % len(participants)
    return RotationSlot(
        participant_index=index,
        user_id=participants[index].user_id,
        start=from_local(slot_start, zone),
        end=from_local(slot_end, zone),
    )


def next_rotation_change(
    rotation: ScheduleRotation,
    at: datetime,
    zone: tzinfo,
) -> datetime | None:
    """Earliest instant after `at` at which this rotation's answer may change.

    Returns None when the rotation can never cover anything again.
    """
    rotation_type = _parse_stored(rotation)
    if rotation_type is None or not rotation.participants:
        return None

    slot = resolve_rotation(rotation, at, zone)
    if slot is not None:
        return slot.end

    start_local = datetime.combine(
        rotation.start_date, rotation.start_time or time(0, 0)
    )
    local_at = to_local(at, zone)
    if local_at < start_local:
        return from_local(start_local, zone)

    # Outside the daily coverage window: coverage resumes at the next start_time
    next_start = datetime.combine(local_at.date(), rotation.start_time)
    if next_start <= local_at:
        next_start += timedelta(days=1)
    return from_local(next_start, zone)
