"""Alert store operations: intake, escalation bookkeeping and human actions.

The escalation worker is the only writer of the escalation fields and
always goes through a conditional UPDATE guarded by the level and repeat
count it read. Human actions take a blocking row lock, so an
acknowledgment that races a tick is applied after the tick commits and
still stops any further escalation.
"""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from pulsar_escalation.core.errors import (
    AlertNotFoundError,
    InvalidAlertTransitionError,
)
from pulsar_escalation.core.timezones import ensure_utc
from pulsar_escalation.logging_config import get_logger
from pulsar_escalation.models.alert import Alert, AlertStatus
from pulsar_escalation.models.escalation_policy import EscalationPolicy, EscalationRule
from pulsar_escalation.schemas.alert import AlertCreate
from pulsar_escalation.services.routing import (
    apply_routing_actions,
    evaluate_routing_rules,
    get_routing_rules,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class AlertIntakeResult:
    """A stored alert and what routing did to it."""

    alert: Alert
    matched_rule_id: uuid.UUID | None
    suppressed: bool


def _policy_loader():
    return (
        selectinload(Alert.escalation_policy)
        .selectinload(EscalationPolicy.rules)
        .selectinload(EscalationRule.targets)
    )


def _escalating_clause(now: datetime):
    """Alerts whose status lets escalation proceed at `now`."""
    return or_(
        Alert.status == AlertStatus.OPEN,
        and_(
            Alert.status == AlertStatus.SNOOZED,
            Alert.snoozed_until <= now,
        ),
    )


async def get_alert(db: AsyncSession, alert_id: uuid.UUID) -> Alert:
    """Load an alert.

    Raises:
        AlertNotFoundError: If the alert does not exist
    """
    alert = await db.get(Alert, alert_id)
    if alert is None:
        raise AlertNotFoundError(alert_id)
    return alert


async def create_alert(
    db: AsyncSession,
    organization_id: uuid.UUID,
    payload: AlertCreate,
    now: datetime | None = None,
) -> AlertIntakeResult:
    """Store a new alert after running it through the routing rules.

    A suppressed alert is stored closed and never enrolled in escalation.
    Otherwise, if it ends up with an escalation policy, it is enrolled
    at level -1 and the first rule's delay starts counting from `now`.

    Args:
        db: Database session
        organization_id: Owning organization
        payload: Incoming alert
        now: Intake time (defaults to the current time)

    Returns:
        AlertIntakeResult with the stored alert
    """
    now = ensure_utc(now or datetime.now(UTC))

    alert = Alert(
        organization_id=organization_id,
        source=payload.source,
        source_id=payload.source_id,
        priority=payload.priority,
        status=AlertStatus.OPEN,
        message=payload.message,
        description=payload.description,
        tags=list(payload.tags),
        custom_fields=dict(payload.custom_fields),
        escalation_policy_id=payload.escalation_policy_id,
        assigned_to_user_id=payload.assigned_to_user_id,
        assigned_to_team_id=payload.assigned_to_team_id,
        escalation_level=-1,
        escalation_repeat_count=0,
        created_at=now,
        updated_at=now,
    )

    rules = await get_routing_rules(db, organization_id)
    matched = evaluate_routing_rules(alert, rules)
    suppressed = False
    if matched is not None:
        suppressed = apply_routing_actions(alert, matched, now)

    if not suppressed and alert.escalation_policy_id is not None:
        alert.escalation_started_at = now

    db.add(alert)
    await db.commit()

    logger.info(
        "Alert created",
        alert_id=str(alert.id),
        source=alert.source,
        priority=alert.priority.value,
        routing_rule_id=str(matched.rule.id) if matched else None,
        suppressed=suppressed,
        escalation_policy_id=(
            str(alert.escalation_policy_id) if alert.escalation_policy_id else None
        ),
    )

    return AlertIntakeResult(
        alert=alert,
        matched_rule_id=matched.rule.id if matched else None,
        suppressed=suppressed,
    )


async def get_escalation_candidates(
    db: AsyncSession,
    now: datetime,
    limit: int = 500,
) -> list[Alert]:
    """Alerts that may need an escalation step, with their policies loaded.

    Whether each one is actually due is decided by the caller.
    """
    result = await db.execute(
        select(Alert)
        .where(
            _escalating_clause(now),
            Alert.escalation_policy_id.isnot(None),
            Alert.escalation_completed_at.is_(None),
        )
        .options(_policy_loader())
        .order_by(Alert.created_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def lock_alert_for_escalation(
    db: AsyncSession,
    alert_id: uuid.UUID,
    now: datetime,
) -> Alert | None:
    """Lock an alert row for one escalation step.

    Rows already locked by another tick are skipped rather than waited on.

    Returns:
        The alert (policy loaded, attributes refreshed), or None if it is
        locked elsewhere or no longer eligible for escalation
    """
    result = await db.execute(
        select(Alert)
        .where(
            Alert.id == alert_id,
            _escalating_clause(now),
            Alert.escalation_policy_id.isnot(None),
            Alert.escalation_completed_at.is_(None),
        )
        .options(_policy_loader())
        .with_for_update(skip_locked=True, of=Alert)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def advance_escalation(
    db: AsyncSession,
    alert_id: uuid.UUID,
    expected_level: int,
    expected_repeat: int,
    new_level: int,
    new_repeat: int,
    now: datetime,
) -> bool:
    """Move an alert to a new escalation level if nobody changed it meanwhile.

    An expired snooze is cleared as part of the same update.

    Returns:
        True if the row was updated, False if the guard did not match
    """
    result = await db.execute(
        update(Alert)
        .where(
            Alert.id == alert_id,
            _escalating_clause(now),
            Alert.escalation_level == expected_level,
            Alert.escalation_repeat_count == expected_repeat,
            Alert.escalation_completed_at.is_(None),
        )
        .values(
            status=AlertStatus.OPEN,
            escalation_level=new_level,
            escalation_repeat_count=new_repeat,
            last_escalated_at=now,
            snoozed_at=None,
            snoozed_until=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_escalation_exhausted(
    db: AsyncSession,
    alert_id: uuid.UUID,
    expected_level: int,
    expected_repeat: int,
    now: datetime,
) -> bool:
    """Mark an alert's policy as exhausted if nobody changed it meanwhile.

    Returns:
        True if the row was updated, False if the guard did not match
    """
    result = await db.execute(
        update(Alert)
        .where(
            Alert.id == alert_id,
            _escalating_clause(now),
            Alert.escalation_level == expected_level,
            Alert.escalation_repeat_count == expected_repeat,
            Alert.escalation_completed_at.is_(None),
        )
        .values(
            status=AlertStatus.OPEN,
            escalation_completed_at=now,
            snoozed_at=None,
            snoozed_until=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _lock_alert(db: AsyncSession, alert_id: uuid.UUID) -> Alert:
    """Lock an alert for a human action, waiting for any running tick."""
    result = await db.execute(
        select(Alert)
        .where(Alert.id == alert_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    alert = result.scalar_one_or_none()
    if alert is None:
        raise AlertNotFoundError(alert_id)
    return alert


async def acknowledge_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
    user_id: uuid.UUID,
    now: datetime | None = None,
) -> Alert:
    """Acknowledge an alert, stopping further escalation.

    Acknowledging an already acknowledged alert is a no-op.

    Raises:
        AlertNotFoundError: If the alert does not exist
        InvalidAlertTransitionError: If the alert is closed
    """
    now = ensure_utc(now or datetime.now(UTC))
    alert = await _lock_alert(db, alert_id)

    if alert.status == AlertStatus.ACKNOWLEDGED:
        await db.rollback()
        return alert
    if alert.status == AlertStatus.CLOSED:
        await db.rollback()
        raise InvalidAlertTransitionError(f"Alert {alert_id} is already closed")

    alert.status = AlertStatus.ACKNOWLEDGED
    alert.acknowledged_by = user_id
    alert.acknowledged_at = now
    alert.snoozed_at = None
    alert.snoozed_until = None
    alert.updated_at = now
    await db.commit()

    logger.info(
        "Alert acknowledged",
        alert_id=str(alert_id),
        user_id=str(user_id),
        escalation_level=alert.escalation_level,
    )
    return alert


async def close_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
    user_id: uuid.UUID | None,
    reason: str | None = None,
    now: datetime | None = None,
) -> Alert:
    """Close an alert. Closing a closed alert is a no-op.

    Raises:
        AlertNotFoundError: If the alert does not exist
    """
    now = ensure_utc(now or datetime.now(UTC))
    alert = await _lock_alert(db, alert_id)

    if alert.status == AlertStatus.CLOSED:
        await db.rollback()
        return alert

    alert.status = AlertStatus.CLOSED
    alert.closed_by = user_id
    alert.closed_at = now
    alert.close_reason = reason
    alert.snoozed_at = None
    alert.snoozed_until = None
    alert.updated_at = now
    await db.commit()

    logger.info("Alert closed", alert_id=str(alert_id), reason=reason)
    return alert


async def snooze_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
    until: datetime,
    now: datetime | None = None,
) -> Alert:
    """Pause escalation until `until`.

    Raises:
        AlertNotFoundError: If the alert does not exist
        InvalidAlertTransitionError: If `until` is not in the future or the
            alert is acknowledged or closed
    """
    now = ensure_utc(now or datetime.now(UTC))
    until = ensure_utc(until)
    if until <= now:
        raise InvalidAlertTransitionError("Snooze must end in the future")

    alert = await _lock_alert(db, alert_id)
    if alert.status not in (AlertStatus.OPEN, AlertStatus.SNOOZED):
        await db.rollback()
        raise InvalidAlertTransitionError(
            f"Cannot snooze alert {alert_id} in status {alert.status.value}"
        )

    alert.status = AlertStatus.SNOOZED
    alert.snoozed_at = now
    alert.snoozed_until = until
    alert.updated_at = now
    await db.commit()

    logger.info(
        "Alert snoozed",
        alert_id=str(alert_id),
        snoozed_until=until.isoformat(),
    )
    return alert


async def assign_escalation_policy(
    db: AsyncSession,
    alert_id: uuid.UUID,
    policy_id: uuid.UUID | None,
    now: datetime | None = None,
) -> Alert:
    """Assign (or clear) an alert's escalation policy, restarting escalation.

    Raises:
        AlertNotFoundError: If the alert does not exist
        InvalidAlertTransitionError: If the alert is closed
    """
    now = ensure_utc(now or datetime.now(UTC))
    alert = await _lock_alert(db, alert_id)
    if alert.status == AlertStatus.CLOSED:
        await db.rollback()
        raise InvalidAlertTransitionError(f"Alert {alert_id} is already closed")

    alert.escalation_policy_id = policy_id
    alert.escalation_level = -1
    alert.escalation_repeat_count = 0
    alert.last_escalated_at = None
    alert.escalation_completed_at = None
    alert.escalation_started_at = now if policy_id is not None else None
    alert.updated_at = now
    await db.commit()

    logger.info(
        "Escalation policy assigned",
        alert_id=str(alert_id),
        policy_id=str(policy_id) if policy_id else None,
    )
    return alert
