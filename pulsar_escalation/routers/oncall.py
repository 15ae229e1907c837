"""On-call router.

Resolves who is on call for a schedule and carries the schedule mutations
that keep rotations resolvable (validated rotations, atomic reordering,
well-formed overrides).
"""

import uuid
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from pulsar_escalation.core.errors import (
    RotationConfigError,
    RotationNotFoundError,
    ScheduleNotFoundError,
)
from pulsar_escalation.database import get_db
from pulsar_escalation.schemas.oncall import (
    OnCallAssignment,
    OnCallResponse,
    OnCallTimelineResponse,
    OverrideCreate,
    OverrideResponse,
    ParticipantReorder,
    RotationCreate,
    RotationResponse,
)
from pulsar_escalation.services.oncall import (
    OnCallResult,
    create_override,
    create_rotation,
    get_on_call_timeline,
    get_on_call_user,
    reorder_participants,
)

router = APIRouter(prefix="/api", tags=["on-call"])

MAX_TIMELINE_WINDOW = timedelta(days=31)


def _assignment(result: OnCallResult) -> OnCallAssignment:
    return OnCallAssignment(
        user_id=result.user_id,
        start=result.start,
        end=result.end,
        is_override=result.is_override,
    )


def _not_found(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


@router.get("/schedules/{schedule_id}/on-call", response_model=OnCallResponse)
async def get_schedule_on_call(
    schedule_id: uuid.UUID,
    at: datetime | None = Query(default=None, description="Defaults to now."),
    db: AsyncSession = Depends(get_db),
) -> OnCallResponse:
    """Who is on call for a schedule at an instant (null when nobody is)."""
    at = at or datetime.now(UTC)
    try:
        result = await get_on_call_user(db, schedule_id, at)
    except ScheduleNotFoundError as e:
        raise _not_found("Schedule not found") from e

    return OnCallResponse(
        schedule_id=schedule_id,
        at=at,
        on_call=_assignment(result) if result else None,
    )


@router.get(
    "/schedules/{schedule_id}/on-call/timeline",
    response_model=OnCallTimelineResponse,
)
async def get_schedule_on_call_timeline(
    schedule_id: uuid.UUID,
    start: datetime,
    end: datetime,
    db: AsyncSession = Depends(get_db),
) -> OnCallTimelineResponse:
    """Successive on-call assignments between start and end (at most 31 days)."""
    if end <= start:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="end must be after start",
        )
    if end - start > MAX_TIMELINE_WINDOW:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Timeline window may not exceed 31 days",
        )

    try:
        entries = await get_on_call_timeline(db, schedule_id, start, end)
    except ScheduleNotFoundError as e:
        raise _not_found("Schedule not found") from e

    return OnCallTimelineResponse(
        schedule_id=schedule_id,
        start=start,
        end=end,
        entries=[_assignment(entry) for entry in entries],
    )


@router.post(
    "/schedules/{schedule_id}/rotations",
    response_model=RotationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_rotation(
    schedule_id: uuid.UUID,
    payload: RotationCreate,
    db: AsyncSession = Depends(get_db),
) -> RotationResponse:
    """Add a rotation to a schedule."""
    try:
        rotation = await create_rotation(db, schedule_id, payload)
    except ScheduleNotFoundError as e:
        raise _not_found("Schedule not found") from e
    except RotationConfigError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e

    return RotationResponse.model_validate(rotation)


@router.put(
    "/rotations/{rotation_id}/participants",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def reorder_rotation_participants(
    rotation_id: uuid.UUID,
    payload: ParticipantReorder,
    db: AsyncSession = Depends(get_db),
) -> None:
    """Rewrite the participant order of a rotation."""
    try:
        await reorder_participants(db, rotation_id, payload.user_ids)
    except RotationNotFoundError as e:
        raise _not_found("Rotation not found") from e
    except RotationConfigError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e


@router.post(
    "/schedules/{schedule_id}/overrides",
    response_model=OverrideResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_override(
    schedule_id: uuid.UUID,
    payload: OverrideCreate,
    db: AsyncSession = Depends(get_db),
) -> OverrideResponse:
    """Put a user on call for a fixed interval, overriding the rotations."""
    try:
        override = await create_override(db, schedule_id, payload)
    except ScheduleNotFoundError as e:
        raise _not_found("Schedule not found") from e

    return OverrideResponse.model_validate(override)
