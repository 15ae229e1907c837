"""Do-not-disturb gate.

Decides whether a notification may reach a user right now. Weekly quiet
hours are evaluated in the time zone stored with the user's DND schedule;
absolute overrides are evaluated as UTC instants.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulsar_escalation.core.timezones import ensure_utc, get_zone, to_local
from pulsar_escalation.logging_config import get_logger
from pulsar_escalation.models.alert import AlertPriority
from pulsar_escalation.models.dnd_settings import UserDNDSettings
from pulsar_escalation.schemas.dnd import DNDOverride, DNDSchedule, DNDWeeklySlot

logger = get_logger(__name__)


class DNDReason(str, enum.Enum):
    """Why the gate allowed or suppressed a notification."""

    DISABLED = "dnd_disabled"
    OUTSIDE_DND = "outside_dnd"
    P1_OVERRIDE = "p1_override"
    URGENT_TARGET = "urgent_target"
    QUIET_HOURS = "quiet_hours"
    DND_OVERRIDE = "dnd_override"


@dataclass(frozen=True)
class DNDDecision:
    """Outcome of the gate for one user and instant."""

    allowed: bool
    in_dnd: bool
    reason: DNDReason


def default_dnd_settings(user_id: uuid.UUID) -> UserDNDSettings:
    """Settings used for users who never configured DND."""
    return UserDNDSettings(
        user_id=user_id,
        enabled=False,
        allow_p1_override=True,
        schedule=None,
        overrides=[],
    )


def parse_dnd_schedule(raw: dict | None) -> DNDSchedule | None:
    """Parse stored weekly quiet hours; malformed documents are ignored."""
    if not raw:
        return None
    try:
        return DNDSchedule.model_validate(raw)
    except ValidationError as e:
        logger.warning("Ignoring malformed DND schedule", error=str(e))
        return None


def parse_dnd_overrides(raw: list | None) -> list[DNDOverride]:
    """Parse stored DND overrides, dropping entries that do not validate."""
    overrides = []
    for item in raw or []:
        try:
            overrides.append(DNDOverride.model_validate(item))
        except ValidationError as e:
            logger.warning("Ignoring malformed DND override", error=str(e))
    return overrides


def slot_covers(slot: DNDWeeklySlot, local_at: datetime) -> bool:
    """Whether a weekly slot covers a local wall-clock time.

    An overnight slot (end <= start) covers its own day from start until
    midnight and the following day until end.
    """
    weekday = local_at.weekday()
    wall = local_at.time()
    day = slot.day.iso_index

    if not slot.overnight:
        return weekday == day and slot.start <= wall < slot.end

    if weekday == day and wall >= slot.start:
        return True
    return weekday == (day + 1) % 7 and wall < slot.end


def in_quiet_hours(schedule: DNDSchedule | None, at: datetime) -> bool:
    if schedule is None or not schedule.weekly:
        return False
    local_at = to_local(at, get_zone(schedule.timezone))
    return any(slot_covers(slot, local_at) for slot in schedule.weekly)


def active_override(overrides: list[DNDOverride], at: datetime) -> DNDOverride | None:
    at = ensure_utc(at)
    for override in overrides:
        if ensure_utc(override.start) <= at < ensure_utc(override.end):
            return override
    return None


def evaluate_dnd(
    settings: UserDNDSettings | None,
    at: datetime,
    priority: AlertPriority,
    urgent: bool = False,
    urgent_bypass_permitted: bool = True,
) -> DNDDecision:
    """Decide whether a notification may be delivered.

    Args:
        settings: The recipient's DND settings, or None if never configured
        at: Instant of delivery
        priority: Priority of the alert being escalated
        urgent: Whether the escalation target is flagged urgent
        urgent_bypass_permitted: Whether the deployment lets urgent
            targets through quiet hours

    Returns:
        DNDDecision with the outcome and its reason
    """
    if settings is None or not settings.enabled:
        return DNDDecision(allowed=True, in_dnd=False, reason=DNDReason.DISABLED)

    override = active_override(parse_dnd_overrides(settings.overrides), at)
    quiet = in_quiet_hours(parse_dnd_schedule(settings.schedule), at)

    if override is None and not quiet:
        return DNDDecision(allowed=True, in_dnd=False, reason=DNDReason.OUTSIDE_DND)

    if settings.allow_p1_override and priority == AlertPriority.P1:
        return DNDDecision(allowed=True, in_dnd=True, reason=DNDReason.P1_OVERRIDE)

    if urgent and urgent_bypass_permitted:
        return DNDDecision(allowed=True, in_dnd=True, reason=DNDReason.URGENT_TARGET)

    reason = DNDReason.DND_OVERRIDE if override is not None else DNDReason.QUIET_HOURS
    return DNDDecision(allowed=False, in_dnd=True, reason=reason)


async def get_dnd_settings_for_users(
    db: AsyncSession,
    user_ids: list[uuid.UUID],
) -> dict[uuid.UUID, UserDNDSettings]:
    """DND settings keyed by user id; users without settings are absent."""
    if not user_ids:
        return {}
    result = await db.execute(
        select(UserDNDSettings).where(UserDNDSettings.user_id.in_(user_ids))
    )
    return {s.user_id: s for s in result.scalars().all()}


async def prune_expired_dnd_overrides(db: AsyncSession, now: datetime) -> int:
    """Drop DND overrides that ended before `now`.

    Returns:
        Number of overrides removed
    """
    now = ensure_utc(now)
    result = await db.execute(
        select(UserDNDSettings).where(UserDNDSettings.overrides.isnot(None))
    )

    removed = 0
    for settings in result.scalars().all():
        kept = [
            item
            for item in settings.overrides or []
            if not _ended_before(item, now)
        ]
        if len(kept) != len(settings.overrides or []):
            removed += len(settings.overrides) - len(kept)
            settings.overrides = kept

    if removed:
        await db.commit()
        logger.info("Pruned expired DND overrides", removed=removed)
    return removed


def _ended_before(item: dict, now: datetime) -> bool:
    try:
        override = DNDOverride.model_validate(item)
    except ValidationError:
        return False
    return ensure_utc(override.end) <= now
