"""On-call resolution for schedules.

Overrides win over rotations. Among overrides covering the same instant
the most recently created one wins; among rotations the earliest-created
one that covers the instant wins. Resolution itself is pure; the async
helpers load what it needs and carry the schedule mutations whose
invariants resolution relies on.
"""

import dataclasses
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from pulsar_escalation.core.errors import (
    RotationConfigError,
    RotationNotFoundError,
    ScheduleNotFoundError,
)
from pulsar_escalation.core.timezones import ensure_utc, get_zone
from pulsar_escalation.logging_config import get_logger
from pulsar_escalation.models.schedule import (
    Schedule,
    ScheduleOverride,
    ScheduleRotation,
    ScheduleRotationParticipant,
)
from pulsar_escalation.schemas.oncall import OverrideCreate, RotationCreate
from pulsar_escalation.services.rotation import (
    next_rotation_change,
    resolve_rotation,
    validate_rotation_config,
)

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# Upper bound on steps when walking a timeline
MAX_TIMELINE_ENTRIES = 1000


@dataclass(frozen=True)
class OnCallResult:
    """Who is on call for a schedule, and for which interval."""

    schedule_id: uuid.UUID
    user_id: uuid.UUID
    start: datetime
    end: datetime
    is_override: bool
    rotation_id: uuid.UUID | None = None
    override_id: uuid.UUID | None = None


def _override_covers(override: ScheduleOverride, at: datetime) -> bool:
    return ensure_utc(override.start_time) <= at < ensure_utc(override.end_time)


def _created_order(item) -> tuple[datetime, str]:
    return (ensure_utc(item.created_at) if item.created_at else _EPOCH, str(item.id))


def select_override(
    overrides: list[ScheduleOverride],
    at: datetime,
) -> ScheduleOverride | None:
    """Pick the override that applies at an instant (latest created wins)."""
    covering = [o for o in overrides if _override_covers(o, at)]
    if not covering:
        return None
    return max(covering, key=_created_order)


def resolve_on_call(
    schedule: Schedule,
    overrides: list[ScheduleOverride],
    at: datetime,
) -> OnCallResult | None:
    """Resolve the on-call user for a schedule at an instant.

    Args:
        schedule: Schedule with rotations and participants loaded
        overrides: Candidate overrides for the schedule
        at: Instant to resolve

    Returns:
        OnCallResult, or None when nobody is on call
    """
    at = ensure_utc(at)

    override = select_override(overrides, at)
    if override is not None:
        return OnCallResult(
            schedule_id=schedule.id,
            user_id=override.user_id,
            start=ensure_utc(override.start_time),
            end=ensure_utc(override.end_time),
            is_override=True,
            override_id=override.id,
        )

    zone = get_zone(schedule.timezone)
    for rotation in sorted(schedule.rotations, key=_created_order):
        slot = resolve_rotation(rotation, at, zone)
        if slot is not None:
            return OnCallResult(
                schedule_id=schedule.id,
                user_id=slot.user_id,
                start=slot.start,
                end=slot.end,
                is_override=False,
                rotation_id=rotation.id,
            )

    return None


def build_on_call_timeline(
    schedule: Schedule,
    overrides: list[ScheduleOverride],
    start: datetime,
    end: datetime,
) -> list[OnCallResult]:
    """Walk successive on-call assignments across [start, end).

    Gaps where nobody is on call are omitted. Entries are clipped to the
    window and adjacent entries for the same assignment are merged.
    """
    start, end = ensure_utc(start), ensure_utc(end)
    zone = get_zone(schedule.timezone)
    entries: list[OnCallResult] = []

    at = start
    for _ in range(MAX_TIMELINE_ENTRIES):
        if at >= end:
            break

        candidates = [end]
        for override in overrides:
            for boundary in (override.start_time, override.end_time):
                boundary = ensure_utc(boundary)
                if boundary > at:
                    candidates.append(boundary)
        for rotation in schedule.rotations:
            change = next_rotation_change(rotation, at, zone)
            if change is not None and change > at:
                candidates.append(change)
        next_at = min(candidates)

        result = resolve_on_call(schedule, overrides, at)
        if result is not None:
            entry = dataclasses.replace(result, start=at, end=next_at)
            previous = entries[-1] if entries else None
            if (
                previous is not None
                and previous.end == entry.start
                and previous.user_id == entry.user_id
                and previous.is_override == entry.is_override
                and previous.rotation_id == entry.rotation_id
                and previous.override_id == entry.override_id
            ):
                entries[-1] = dataclasses.replace(previous, end=entry.end)
            else:
                entries.append(entry)

        at = next_at

    if at < end:
        logger.warning(
            "On-call timeline truncated",
            schedule_id=str(schedule.id),
            entries=len(entries),
        )

    return entries


async def get_schedule(db: AsyncSession, schedule_id: uuid.UUID) -> Schedule:
    """Load a schedule with its rotations and participants.

    Raises:
        ScheduleNotFoundError: If the schedule does not exist
    """
    result = await db.execute(
        select(Schedule)
        .where(Schedule.id == schedule_id)
        .options(
            selectinload(Schedule.rotations).selectinload(
                ScheduleRotation.participants
            )
        )
    )
    schedule = result.scalar_one_or_none()
    if schedule is None:
        raise ScheduleNotFoundError(schedule_id)
    return schedule


async def get_overrides_between(
    db: AsyncSession,
    schedule_id: uuid.UUID,
    start: datetime,
    end: datetime,
) -> list[ScheduleOverride]:
    """Overrides of a schedule that intersect [start, end)."""
    result = await db.execute(
        select(ScheduleOverride)
        .where(
            ScheduleOverride.schedule_id == schedule_id,
            ScheduleOverride.start_time < end,
            ScheduleOverride.end_time > start,
        )
        .order_by(ScheduleOverride.created_at.desc())
    )
    return list(result.scalars().all())


async def get_on_call_user(
    db: AsyncSession,
    schedule_id: uuid.UUID,
    at: datetime,
) -> OnCallResult | None:
    """Resolve who is on call for a stored schedule.

    Args:
        db: Database session
        schedule_id: Schedule to resolve
        at: Instant to resolve

    Returns:
        OnCallResult, or None when nobody is on call

    Raises:
        ScheduleNotFoundError: If the schedule does not exist
    """
    at = ensure_utc(at)
    schedule = await get_schedule(db, schedule_id)
    overrides = await get_overrides_between(
        db, schedule_id, at, at + timedelta(microseconds=1)
    )

    on_call = resolve_on_call(schedule, overrides, at)
    if on_call is None:
        logger.info(
            "Nobody on call",
            schedule_id=str(schedule_id),
            at=at.isoformat(),
        )
    return on_call


async def get_on_call_timeline(
    db: AsyncSession,
    schedule_id: uuid.UUID,
    start: datetime,
    end: datetime,
) -> list[OnCallResult]:
    """Successive on-call assignments of a stored schedule across a window.

    Raises:
        ScheduleNotFoundError: If the schedule does not exist
    """
    schedule = await get_schedule(db, schedule_id)
    overrides = await get_overrides_between(
        db, schedule_id, ensure_utc(start), ensure_utc(end)
    )
    return build_on_call_timeline(schedule, overrides, start, end)


async def create_rotation(
    db: AsyncSession,
    schedule_id: uuid.UUID,
    payload: RotationCreate,
) -> ScheduleRotation:
    """Add a rotation (and its participants, in order) to a schedule.

    Raises:
        ScheduleNotFoundError: If the schedule does not exist
        RotationConfigError: If the rotation parameters are invalid
    """
    rotation_type = validate_rotation_config(
        payload.rotation_type, payload.rotation_length, payload.handoff_day
    )

    schedule = await db.get(Schedule, schedule_id)
    if schedule is None:
        raise ScheduleNotFoundError(schedule_id)

    rotation = ScheduleRotation(
        schedule_id=schedule_id,
        name=payload.name,
        rotation_type=rotation_type,
        rotation_length=payload.rotation_length,
        start_date=payload.start_date,
        start_time=payload.start_time,
        end_time=payload.end_time,
        handoff_day=payload.handoff_day,
        handoff_time=payload.handoff_time,
        participants=[
            ScheduleRotationParticipant(user_id=user_id, position=position)
            for position, user_id in enumerate(payload.participant_user_ids)
        ],
    )
    db.add(rotation)
    await db.commit()
    await db.refresh(rotation, attribute_names=["participants"])

    logger.info(
        "Rotation created",
        schedule_id=str(schedule_id),
        rotation_id=str(rotation.id),
        rotation_type=rotation_type.value,
        participants=len(payload.participant_user_ids),
    )
    return rotation


async def reorder_participants(
    db: AsyncSession,
    rotation_id: uuid.UUID,
    user_ids: list[uuid.UUID],
) -> None:
    """Rewrite every participant position of a rotation in one transaction.

    Args:
        db: Database session
        rotation_id: Rotation to reorder
        user_ids: The rotation's current participants in their new order

    Raises:
        RotationNotFoundError: If the rotation does not exist
        RotationConfigError: If user_ids is not a permutation of the
            current participants
    """
    result = await db.execute(
        select(ScheduleRotationParticipant)
        .where(ScheduleRotationParticipant.rotation_id == rotation_id)
        .with_for_update()
    )
    participants = list(result.scalars().all())
    if not participants and await db.get(ScheduleRotation, rotation_id) is None:
        raise RotationNotFoundError(rotation_id)

    current = {p.user_id for p in participants}
    if len(user_ids) != len(current) or set(user_ids) != current:
        raise RotationConfigError(
            "New order must list every current participant exactly once"
        )

    # Position uniqueness is checked at commit, so rows can swap freely here
    for position, user_id in enumerate(user_ids):
        await db.execute(
            update(ScheduleRotationParticipant)
            .where(
                ScheduleRotationParticipant.rotation_id == rotation_id,
                ScheduleRotationParticipant.user_id == user_id,
            )
            .values(position=position)
        )
    await db.commit()

    logger.info(
        "Rotation participants reordered",
        rotation_id=str(rotation_id),
        participants=len(user_ids),
    )


async def create_override(
    db: AsyncSession,
    schedule_id: uuid.UUID,
    payload: OverrideCreate,
    created_by: uuid.UUID | None = None,
) -> ScheduleOverride:
    """Create an override for [start_time, end_time).

    Raises:
        ScheduleNotFoundError: If the schedule does not exist
    """
    schedule = await db.get(Schedule, schedule_id)
    if schedule is None:
        raise ScheduleNotFoundError(schedule_id)

    override = ScheduleOverride(
        schedule_id=schedule_id,
        user_id=payload.user_id,
        start_time=ensure_utc(payload.start_time),
        end_time=ensure_utc(payload.end_time),
        note=payload.note,
        created_by=created_by,
        created_at=datetime.now(UTC),
    )
    db.add(override)
    await db.commit()

    logger.info(
        "Override created",
        schedule_id=str(schedule_id),
        override_id=str(override.id),
        user_id=str(payload.user_id),
    )
    return override
