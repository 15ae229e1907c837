"""Escalation target resolution.

Turns the targets of an escalation rule into the concrete users to notify
and the channels to notify them on. A target that points at something
which no longer exists is a configuration problem: it is logged and
skipped so the remaining targets are still notified.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulsar_escalation.core.errors import (
    ScheduleNotFoundError,
    TargetResolutionError,
)
from pulsar_escalation.logging_config import get_logger
from pulsar_escalation.models.alert import AlertPriority
from pulsar_escalation.models.escalation_policy import (
    EscalationRule,
    EscalationTarget,
    TargetType,
)
from pulsar_escalation.models.notification import ChannelType, UserNotificationChannel
from pulsar_escalation.models.user import Team, TeamMember, User
from pulsar_escalation.schemas.escalation import TargetNotificationConfig
from pulsar_escalation.services.oncall import get_on_call_user

logger = get_logger(__name__)


@dataclass
class Recipient:
    """A user to notify for one escalation step.

    channels holds explicit channel overrides from the targets that
    produced this user; use_preferences is set when at least one of those
    targets defers to the user's own channel preferences.
    """

    user_id: uuid.UUID
    urgent: bool = False
    channels: list[ChannelType] = field(default_factory=list)
    use_preferences: bool = False
    via: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ChannelAddress:
    """A concrete channel to deliver on, with the address if one is known."""

    channel: ChannelType
    address: str | None


def parse_target_config(target: EscalationTarget) -> TargetNotificationConfig:
    """Parse a target's channel override; malformed overrides are ignored."""
    if not target.notification_channels:
        return TargetNotificationConfig()
    try:
        return TargetNotificationConfig.model_validate(target.notification_channels)
    except ValidationError as e:
        logger.warning(
            "Ignoring malformed target channel override",
            target_id=str(target.id),
            error=str(e),
        )
        return TargetNotificationConfig()


async def _resolve_user(db: AsyncSession, target: EscalationTarget) -> list[uuid.UUID]:
    user = await db.get(User, target.target_id)
    if user is None:
        raise TargetResolutionError("user", target.target_id, "user not found")
    if not user.is_active:
        logger.info("Skipping inactive user target", user_id=str(user.id))
        return []
    return [user.id]


async def _resolve_team(db: AsyncSession, target: EscalationTarget) -> list[uuid.UUID]:
    team = await db.get(Team, target.target_id)
    if team is None:
        raise TargetResolutionError("team", target.target_id, "team not found")

    result = await db.execute(
        select(TeamMember.user_id)
        .join(User, User.id == TeamMember.user_id)
        .where(TeamMember.team_id == team.id, User.is_active.is_(True))
        .order_by(TeamMember.created_at.asc())
    )
    user_ids = list(result.scalars().all())
    if not user_ids:
        logger.info("Team target has no active members", team_id=str(team.id))
    return user_ids


async def _resolve_schedule(
    db: AsyncSession,
    target: EscalationTarget,
    now: datetime,
) -> list[uuid.UUID]:
    try:
        on_call = await get_on_call_user(db, target.target_id, now)
    except ScheduleNotFoundError as e:
        raise TargetResolutionError(
            "schedule", target.target_id, "schedule not found"
        ) from e

    if on_call is None:
        return []
    return [on_call.user_id]


async def resolve_target_users(
    db: AsyncSession,
    target: EscalationTarget,
    now: datetime,
) -> list[uuid.UUID]:
    """Users a single target expands to at `now`.

    Raises:
        TargetResolutionError: If the target points at a missing entity
    """
    target_type = TargetType(target.target_type)
    if target_type is TargetType.USER:
        return await _resolve_user(db, target)
    if target_type is TargetType.TEAM:
        return await _resolve_team(db, target)
    if target_type is TargetType.SCHEDULE:
        return await _resolve_schedule(db, target, now)
    raise TargetResolutionError(
        target_type.value, target.target_id, "unsupported target type"
    )


async def resolve_rule_recipients(
    db: AsyncSession,
    rule: EscalationRule,
    now: datetime,
) -> list[Recipient]:
    """Resolve every target of a rule into de-duplicated recipients.

    A user reached through several targets is notified once; the
    recipient is urgent if any of those targets is urgent and carries the
    union of their channel overrides.

    Args:
        db: Database session
        rule: The escalation rule that is firing
        now: Instant used to resolve schedule targets

    Returns:
        Recipients in target order
    """
    recipients: dict[uuid.UUID, Recipient] = {}

    for target in rule.targets:
        try:
            user_ids = await resolve_target_users(db, target, now)
        except TargetResolutionError as e:
            logger.error(
                "Skipping escalation target",
                rule_id=str(rule.id),
                target_id=str(target.target_id),
                target_type=e.target_type,
                error=str(e),
            )
            continue

        config = parse_target_config(target)
        for user_id in user_ids:
            recipient = recipients.setdefault(user_id, Recipient(user_id=user_id))
            recipient.urgent = recipient.urgent or config.urgent
            recipient.via.append(
                f"{TargetType(target.target_type).value}:{target.target_id}"
            )
            if config.channels:
                for channel in config.channels:
                    if channel not in recipient.channels:
                        recipient.channels.append(channel)
            else:
                recipient.use_preferences = True

    return list(recipients.values())


async def get_channel_preferences(
    db: AsyncSession,
    user_ids: list[uuid.UUID],
) -> dict[uuid.UUID, list[UserNotificationChannel]]:
    """Stored notification channels keyed by user id."""
    if not user_ids:
        return {}
    result = await db.execute(
        select(UserNotificationChannel)
        .where(UserNotificationChannel.user_id.in_(user_ids))
        .order_by(UserNotificationChannel.created_at.asc())
    )
    preferences: dict[uuid.UUID, list[UserNotificationChannel]] = {}
    for channel in result.scalars().all():
        preferences.setdefault(channel.user_id, []).append(channel)
    return preferences


def effective_channels(
    recipient: Recipient,
    preferences: list[UserNotificationChannel],
    priority: AlertPriority,
    fallback_email: str | None = None,
) -> list[ChannelAddress]:
    """Channels to deliver on for one recipient.

    Explicit target overrides are always used. When a target defers to the
    user's preferences, their enabled channels that accept the alert's
    priority are added; a user who never configured any channel falls back
    to email.
    """
    addresses = {c.channel: c.address for c in preferences}
    selected: list[ChannelAddress] = [
        ChannelAddress(channel, addresses.get(channel))
        for channel in recipient.channels
    ]

    if recipient.use_preferences:
        if preferences:
            for pref in preferences:
                if pref.accepts(priority) and pref.channel not in recipient.channels:
                    selected.append(ChannelAddress(pref.channel, pref.address))
        elif ChannelType.EMAIL not in recipient.channels:
            selected.append(ChannelAddress(ChannelType.EMAIL, fallback_email))

    if fallback_email:
        selected = [
            ChannelAddress(c.channel, fallback_email)
            if c.channel is ChannelType.EMAIL and not c.address
            else c
            for c in selected
        ]

    deduped: list[ChannelAddress] = []
    for item in selected:
        if all(item.channel is not d.channel for d in deduped):
            deduped.append(item)
    return deduped
