"""Alert escalation engine.

Walks alerts through the ordered rules of their escalation policy. Each
tick selects the alerts whose next step is due and processes every one
of them as an independent unit in its own transaction:

    lock row -> re-plan -> resolve targets -> DND gate -> dispatch -> persist

The row lock (SKIP LOCKED) keeps overlapping ticks from touching the same
alert, and the persist step is a conditional update on the level and
repeat count that were read, so an alert advances at most once per due
window. A failure in one alert never affects the others in the batch.
"""

import asyncio
import enum
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulsar_escalation.config import Settings
from pulsar_escalation.config import settings as default_settings
from pulsar_escalation.core.errors import NotificationDispatchError
from pulsar_escalation.core.timezones import ensure_utc
from pulsar_escalation.logging_config import get_logger
from pulsar_escalation.models.alert import Alert, AlertStatus
from pulsar_escalation.models.escalation_event import (
    EscalationEvent,
    EscalationEventType,
)
from pulsar_escalation.models.escalation_policy import EscalationPolicy, EscalationRule
from pulsar_escalation.models.notification import NotificationLog, NotificationLogStatus
from pulsar_escalation.models.user import User
from pulsar_escalation.services.alert_notifier import (
    NotificationPayload,
    build_escalation_message,
    build_escalation_subject,
)
from pulsar_escalation.services.alert_service import (
    advance_escalation,
    get_escalation_candidates,
    lock_alert_for_escalation,
    mark_escalation_exhausted,
)
from pulsar_escalation.services.dnd import (
    evaluate_dnd,
    get_dnd_settings_for_users,
    prune_expired_dnd_overrides,
)
from pulsar_escalation.services.escalation_targets import (
    Recipient,
    effective_channels,
    get_channel_preferences,
    resolve_rule_recipients,
)
from pulsar_escalation.services.notification_dispatcher import NotificationDispatcher

logger = get_logger(__name__)


class EscalationState(str, enum.Enum):
    """Escalation state derived from an alert's stored fields."""

    NOT_ENROLLED = "not_enrolled"
    PENDING = "pending"  # enrolled, no rule fired yet (level -1)
    AT_LEVEL = "at_level"
    SNOOZED = "snoozed"
    EXHAUSTED = "exhausted"
    ACKNOWLEDGED = "acknowledged"
    CLOSED = "closed"


class StepAction(str, enum.Enum):
    """What the next escalation step for an alert is."""

    INELIGIBLE = "ineligible"
    NOT_DUE = "not_due"
    ADVANCE = "advance"
    EXHAUST = "exhaust"


class AlertOutcome(str, enum.Enum):
    """What a tick did with one alert."""

    ADVANCED = "advanced"
    EXHAUSTED = "exhausted"
    NOT_DUE = "not_due"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class EscalationStep:
    """Plan for an alert's next escalation step."""

    action: StepAction
    reason: str
    rule: EscalationRule | None = None
    rule_index: int | None = None
    repeat_count: int = 0
    due_at: datetime | None = None


@dataclass
class DispatchSummary:
    """Notification counts for one escalation step."""

    sent: int = 0
    suppressed: int = 0
    failed: int = 0
    transient_failures: int = 0
    skipped: int = 0
    notified_user_ids: list[str] = field(default_factory=list)

    @property
    def attempts(self) -> int:
        return self.sent + self.failed + self.transient_failures

    @property
    def all_transient(self) -> bool:
        """Every delivery attempted failed with a retryable error."""
        return self.attempts > 0 and self.transient_failures == self.attempts


@dataclass
class AlertResult:
    """Outcome of processing one alert during a tick."""

    alert_id: uuid.UUID
    outcome: AlertOutcome
    reason: str | None = None
    dispatch: DispatchSummary = field(default_factory=DispatchSummary)


@dataclass
class TickReport:
    """Summary of one escalation tick.

    started_at and finished_at are on the tick's logical clock (the `now` it
    evaluated against); duration_ms is measured wall time.
    """

    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: float | None = None
    candidates: int = 0
    results: list[AlertResult] = field(default_factory=list)

    def count(self, outcome: AlertOutcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def advanced(self) -> int:
        return self.count(AlertOutcome.ADVANCED)

    @property
    def exhausted(self) -> int:
        return self.count(AlertOutcome.EXHAUSTED)

    @property
    def not_due(self) -> int:
        return self.count(AlertOutcome.NOT_DUE)

    @property
    def skipped(self) -> int:
        return self.count(AlertOutcome.SKIPPED)

    @property
    def failed(self) -> int:
        return self.count(AlertOutcome.FAILED)

    @property
    def notifications_sent(self) -> int:
        return sum(r.dispatch.sent for r in self.results)

    @property
    def notifications_suppressed(self) -> int:
        return sum(r.dispatch.suppressed for r in self.results)

    @property
    def notifications_failed(self) -> int:
        return sum(
            r.dispatch.failed + r.dispatch.transient_failures for r in self.results
        )

    def summary(self) -> dict:
        return {
            "candidates": self.candidates,
            "advanced": self.advanced,
            "exhausted": self.exhausted,
            "not_due": self.not_due,
            "skipped": self.skipped,
            "failed": self.failed,
            "notifications_sent": self.notifications_sent,
            "notifications_suppressed": self.notifications_suppressed,
            "notifications_failed": self.notifications_failed,
            "duration_ms": self.duration_ms,
        }


# ── State derivation and step planning (pure logic) ──


def derive_escalation_state(alert: Alert, now: datetime) -> EscalationState:
    """Derive the escalation state from an alert's stored fields.

    A snoozed alert whose snooze has run out behaves like an open one.
    """
    if alert.status == AlertStatus.ACKNOWLEDGED:
        return EscalationState.ACKNOWLEDGED
    if alert.status == AlertStatus.CLOSED:
        return EscalationState.CLOSED
    if (
        alert.status == AlertStatus.SNOOZED
        and alert.snoozed_until is not None
        and ensure_utc(alert.snoozed_until) > now
    ):
        return EscalationState.SNOOZED
    if alert.escalation_policy_id is None:
        return EscalationState.NOT_ENROLLED
    if alert.escalation_completed_at is not None:
        return EscalationState.EXHAUSTED
    if alert.escalation_level < 0:
        return EscalationState.PENDING
    return EscalationState.AT_LEVEL


def _reference_time(alert: Alert) -> datetime:
    """Instant the next rule's delay counts from."""
    reference = alert.last_escalated_at or alert.escalation_started_at
    return ensure_utc(reference or alert.created_at)


def plan_escalation_step(
    alert: Alert,
    policy: EscalationPolicy | None,
    now: datetime,
    shift_due_by_snooze: bool = False,
) -> EscalationStep:
    """Work out an alert's next escalation step.

    The next rule is the one after the current level. Past the last rule
    the chain restarts at rule 0 (counting one more repeat) while the
    policy's repeat budget allows, and is exhausted otherwise. A rule is
    due once its delay has elapsed since the previous step fired (or
    since enrollment, for the first step).

    Args:
        alert: Alert with its stored escalation fields
        policy: The alert's escalation policy with rules loaded
        now: Current instant
        shift_due_by_snooze: Push the due time back by the length of the
            alert's last snooze

    Returns:
        EscalationStep describing what should happen now
    """
    now = ensure_utc(now)
    state = derive_escalation_state(alert, now)
    if state not in (EscalationState.PENDING, EscalationState.AT_LEVEL):
        return EscalationStep(action=StepAction.INELIGIBLE, reason=state.value)

    if policy is None:
        return EscalationStep(action=StepAction.INELIGIBLE, reason="policy_missing")

    # At most one step per instant, whatever the rule delays are
    if alert.last_escalated_at is not None and now <= ensure_utc(
        alert.last_escalated_at
    ):
        return EscalationStep(action=StepAction.NOT_DUE, reason="already_escalated")

    rules = sorted(policy.rules, key=lambda r: r.position)
    repeat_count = alert.escalation_repeat_count or 0
    next_index = alert.escalation_level + 1

    if next_index >= len(rules):
        can_repeat = (
            bool(rules)
            and policy.repeat_enabled
            and (policy.repeat_count is None or repeat_count < policy.repeat_count)
        )
        if not can_repeat:
            return EscalationStep(
                action=StepAction.EXHAUST,
                reason="no_rules" if not rules else "policy_exhausted",
                repeat_count=repeat_count,
                due_at=now,
            )
        next_index = 0
        repeat_count += 1

    rule = rules[next_index]
    due_at = _reference_time(alert) + timedelta(minutes=rule.escalation_delay)

    if (
        shift_due_by_snooze
        and alert.snoozed_at is not None
        and alert.snoozed_until is not None
    ):
        due_at += ensure_utc(alert.snoozed_until) - ensure_utc(alert.snoozed_at)

    if now < due_at:
        return EscalationStep(
            action=StepAction.NOT_DUE,
            reason="not_due",
            rule=rule,
            rule_index=next_index,
            repeat_count=repeat_count,
            due_at=due_at,
        )

    return EscalationStep(
        action=StepAction.ADVANCE,
        reason="due",
        rule=rule,
        rule_index=next_index,
        repeat_count=repeat_count,
        due_at=due_at,
    )


# ── Engine ──


class EscalationEngine:
    """Advances due alerts through their escalation policies.

    Args:
        session_maker: Factory for database sessions; one session is
            opened per alert
        dispatcher: Notification dispatcher client
        settings: Engine settings (concurrency, timeouts, DND bypass)
    """

    def __init__(
        self,
        session_maker: Callable[[], AsyncSession],
        dispatcher: NotificationDispatcher,
        settings: Settings = default_settings,
    ):
        self._session_maker = session_maker
        self._dispatcher = dispatcher
        self._settings = settings

    async def process_pending_escalations(
        self,
        now: datetime | None = None,
    ) -> TickReport:
        """Run one escalation tick.

        Args:
            now: Instant to evaluate due times against (defaults to now)

        Returns:
            TickReport describing what happened to every candidate alert
        """
        now = ensure_utc(now or datetime.now(UTC))
        report = TickReport(started_at=now)
        start_time = time.perf_counter()

        async with self._session_maker() as db:
            candidates = await get_escalation_candidates(
                db, now, limit=self._settings.escalation_batch_size
            )
        report.candidates = len(candidates)

        due_ids: list[uuid.UUID] = []
        for alert in candidates:
            step = plan_escalation_step(
                alert,
                alert.escalation_policy,
                now,
                self._settings.escalation_shift_due_by_snooze,
            )
            if step.action in (StepAction.ADVANCE, StepAction.EXHAUST):
                due_ids.append(alert.id)
            else:
                report.results.append(
                    AlertResult(alert.id, AlertOutcome.NOT_DUE, reason=step.reason)
                )

        semaphore = asyncio.Semaphore(max(1, self._settings.escalation_max_concurrency))

        async def run(alert_id: uuid.UUID) -> AlertResult:
            async with semaphore:
                return await self._process_with_timeout(alert_id, now)

        report.results.extend(await asyncio.gather(*(run(a) for a in due_ids)))
        elapsed = time.perf_counter() - start_time
        report.finished_at = now + timedelta(seconds=elapsed)
        report.duration_ms = round(elapsed * 1000, 2)

        logger.info("Escalation tick completed", **report.summary())
        return report

    async def prune_dnd_overrides(self, now: datetime | None = None) -> int:
        """Drop DND overrides that have already ended."""
        now = ensure_utc(now or datetime.now(UTC))
        async with self._session_maker() as db:
            return await prune_expired_dnd_overrides(db, now)

    async def _process_with_timeout(
        self,
        alert_id: uuid.UUID,
        now: datetime,
    ) -> AlertResult:
        try:
            return await asyncio.wait_for(
                self.process_alert(alert_id, now),
                timeout=self._settings.escalation_alert_timeout_seconds,
            )
        except TimeoutError:
            logger.error(
                "Escalation timed out",
                alert_id=str(alert_id),
                timeout_seconds=self._settings.escalation_alert_timeout_seconds,
            )
            return AlertResult(alert_id, AlertOutcome.FAILED, reason="timeout")
        except Exception as e:
            logger.exception(
                "Escalation failed",
                alert_id=str(alert_id),
                error=str(e),
            )
            return AlertResult(alert_id, AlertOutcome.FAILED, reason=str(e))

    async def process_alert(self, alert_id: uuid.UUID, now: datetime) -> AlertResult:
        """Run one alert's escalation step in its own transaction.

        Any exception rolls the transaction back, leaving the alert as it was.
        """
        async with self._session_maker() as db:
            try:
                return await self._process_locked(db, alert_id, now)
            except Exception:
                await db.rollback()
                raise

    async def _process_locked(
        self,
        db: AsyncSession,
        alert_id: uuid.UUID,
        now: datetime,
    ) -> AlertResult:
        alert = await lock_alert_for_escalation(db, alert_id, now)
        if alert is None:
            await db.rollback()
            logger.debug("Alert locked or no longer eligible", alert_id=str(alert_id))
            return AlertResult(alert_id, AlertOutcome.SKIPPED, reason="not_eligible")

        policy = alert.escalation_policy
        step = plan_escalation_step(
            alert, policy, now, self._settings.escalation_shift_due_by_snooze
        )

        if step.action is StepAction.EXHAUST:
            return await self._exhaust(db, alert, step, now)
        if step.action is not StepAction.ADVANCE:
            await db.rollback()
            outcome = (
                AlertOutcome.NOT_DUE
                if step.action is StepAction.NOT_DUE
                else AlertOutcome.SKIPPED
            )
            return AlertResult(alert_id, outcome, reason=step.reason)

        expected_level = alert.escalation_level
        expected_repeat = alert.escalation_repeat_count
        recipients = await resolve_rule_recipients(db, step.rule, now)
        if not recipients:
            logger.warning(
                "Escalation rule resolved to no recipients",
                alert_id=str(alert_id),
                rule_id=str(step.rule.id),
                level=step.rule_index,
            )

        dispatch = await self._notify(db, alert, step, recipients, now)

        if dispatch.all_transient:
            db.add(
                EscalationEvent(
                    alert_id=alert_id,
                    policy_id=alert.escalation_policy_id,
                    rule_id=step.rule.id,
                    event_type=EscalationEventType.DISPATCH_FAILED,
                    level=step.rule_index,
                    repeat_count=step.repeat_count,
                    recipients_notified=[],
                    reason="dispatcher unavailable",
                    triggered_at=now,
                )
            )
            await db.commit()
            logger.warning(
                "Escalation deferred, dispatcher unavailable",
                alert_id=str(alert_id),
                level=step.rule_index,
                attempts=dispatch.attempts,
            )
            return AlertResult(
                alert_id,
                AlertOutcome.FAILED,
                reason="dispatcher_unavailable",
                dispatch=dispatch,
            )

        advanced = await advance_escalation(
            db,
            alert_id,
            expected_level=expected_level,
            expected_repeat=expected_repeat,
            new_level=step.rule_index,
            new_repeat=step.repeat_count,
            now=now,
        )
        if not advanced:
            await db.rollback()
            logger.info("Escalation lost race, skipping", alert_id=str(alert_id))
            return AlertResult(alert_id, AlertOutcome.SKIPPED, reason="lost_race")

        repeated = step.repeat_count > expected_repeat
        db.add(
            EscalationEvent(
                alert_id=alert_id,
                policy_id=alert.escalation_policy_id,
                rule_id=step.rule.id,
                event_type=(
                    EscalationEventType.REPEATED
                    if repeated
                    else EscalationEventType.ADVANCED
                ),
                level=step.rule_index,
                repeat_count=step.repeat_count,
                recipients_notified=dispatch.notified_user_ids,
                reason=None if recipients else "no recipients",
                triggered_at=now,
            )
        )
        await db.commit()

        logger.info(
            "Alert escalated",
            alert_id=str(alert_id),
            level=step.rule_index,
            repeat_count=step.repeat_count,
            recipients=len(recipients),
            sent=dispatch.sent,
            suppressed=dispatch.suppressed,
            failed=dispatch.failed + dispatch.transient_failures,
        )
        return AlertResult(alert_id, AlertOutcome.ADVANCED, dispatch=dispatch)

    async def _exhaust(
        self,
        db: AsyncSession,
        alert: Alert,
        step: EscalationStep,
        now: datetime,
    ) -> AlertResult:
        marked = await mark_escalation_exhausted(
            db,
            alert.id,
            expected_level=alert.escalation_level,
            expected_repeat=alert.escalation_repeat_count,
            now=now,
        )
        if not marked:
            await db.rollback()
            return AlertResult(alert.id, AlertOutcome.SKIPPED, reason="lost_race")

        db.add(
            EscalationEvent(
                alert_id=alert.id,
                policy_id=alert.escalation_policy_id,
                rule_id=None,
                event_type=EscalationEventType.EXHAUSTED,
                level=alert.escalation_level,
                repeat_count=alert.escalation_repeat_count,
                recipients_notified=[],
                reason=step.reason,
                triggered_at=now,
            )
        )
        await db.commit()

        logger.info(
            "Escalation policy exhausted",
            alert_id=str(alert.id),
            level=alert.escalation_level,
            repeat_count=alert.escalation_repeat_count,
        )
        return AlertResult(alert.id, AlertOutcome.EXHAUSTED, reason=step.reason)

    async def _notify(
        self,
        db: AsyncSession,
        alert: Alert,
        step: EscalationStep,
        recipients: list[Recipient],
        now: datetime,
    ) -> DispatchSummary:
        """Gate and dispatch notifications for every recipient of a step.

        One NotificationLog row is added per attempt, suppression or skip.
        """
        summary = DispatchSummary()
        if not recipients:
            return summary

        user_ids = [r.user_id for r in recipients]
        dnd_settings = await get_dnd_settings_for_users(db, user_ids)
        preferences = await get_channel_preferences(db, user_ids)
        users = await _get_users(db, user_ids)

        subject = build_escalation_subject(alert)
        message = build_escalation_message(alert, step.rule_index, step.repeat_count)

        def log(user_id, status, channel=None, reason=None, error=None) -> None:
            db.add(
                NotificationLog(
                    alert_id=alert.id,
                    user_id=user_id,
                    channel=channel,
                    escalation_level=step.rule_index,
                    status=status,
                    reason=reason,
                    error_message=error,
                    subject=subject,
                    message=message,
                    sent_at=now if status is NotificationLogStatus.SENT else None,
                    created_at=now,
                )
            )

        for recipient in recipients:
            decision = evaluate_dnd(
                dnd_settings.get(recipient.user_id),
                now,
                alert.priority,
                urgent=recipient.urgent,
                urgent_bypass_permitted=self._settings.dnd_urgent_bypass_enabled,
            )
            if not decision.allowed:
                summary.suppressed += 1
                log(
                    recipient.user_id,
                    NotificationLogStatus.SUPPRESSED,
                    reason=f"dnd:{decision.reason.value}",
                )
                logger.info(
                    "Notification suppressed by DND",
                    alert_id=str(alert.id),
                    user_id=str(recipient.user_id),
                    reason=decision.reason.value,
                )
                continue

            user = users.get(recipient.user_id)
            channels = effective_channels(
                recipient,
                preferences.get(recipient.user_id, []),
                alert.priority,
                fallback_email=user.email if user else None,
            )
            if not channels:
                summary.skipped += 1
                log(
                    recipient.user_id,
                    NotificationLogStatus.SKIPPED,
                    reason="no_channel",
                )
                continue

            delivered_to_user = False
            for target in channels:
                payload = NotificationPayload(
                    alert_id=alert.id,
                    subject=subject,
                    message=message,
                    priority=alert.priority,
                    escalation_level=step.rule_index,
                    urgent=recipient.urgent,
                    address=target.address,
                    metadata={
                        "repeat_count": step.repeat_count,
                        "via": recipient.via,
                        "dnd": decision.reason.value,
                    },
                )
                try:
                    result = await self._dispatcher.send(
                        recipient.user_id, target.channel, payload
                    )
                except NotificationDispatchError as e:
                    summary.transient_failures += 1
                    log(
                        recipient.user_id,
                        NotificationLogStatus.FAILED,
                        channel=target.channel,
                        reason="dispatch_unavailable",
                        error=str(e),
                    )
                    logger.warning(
                        "Notification dispatch failed",
                        alert_id=str(alert.id),
                        user_id=str(recipient.user_id),
                        channel=target.channel.value,
                        error=str(e),
                    )
                    continue
                except Exception as e:
                    # Earlier deliveries are already out; keep their logs
                    summary.failed += 1
                    log(
                        recipient.user_id,
                        NotificationLogStatus.FAILED,
                        channel=target.channel,
                        reason="dispatch_error",
                        error=str(e),
                    )
                    logger.exception(
                        "Unexpected notification dispatch error",
                        alert_id=str(alert.id),
                        user_id=str(recipient.user_id),
                        channel=target.channel.value,
                    )
                    continue

                if result.delivered:
                    summary.sent += 1
                    delivered_to_user = True
                    log(
                        recipient.user_id,
                        NotificationLogStatus.SENT,
                        channel=target.channel,
                    )
                else:
                    summary.failed += 1
                    log(
                        recipient.user_id,
                        NotificationLogStatus.FAILED,
                        channel=target.channel,
                        reason="rejected",
                        error=result.error,
                    )

            if delivered_to_user:
                summary.notified_user_ids.append(str(recipient.user_id))

        return summary


async def _get_users(
    db: AsyncSession,
    user_ids: list[uuid.UUID],
) -> dict[uuid.UUID, User]:
    result = await db.execute(select(User).where(User.id.in_(user_ids)))
    return {u.id: u for u in result.scalars().all()}


async def get_escalation_events_for_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
) -> list[EscalationEvent]:
    """Escalation events for an alert, oldest first."""
    result = await db.execute(
        select(EscalationEvent)
        .where(EscalationEvent.alert_id == alert_id)
        .order_by(EscalationEvent.triggered_at.asc())
    )
    return list(result.scalars().all())


async def get_notification_logs_for_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
) -> list[NotificationLog]:
    """Notification attempts for an alert, oldest first."""
    result = await db.execute(
        select(NotificationLog)
        .where(NotificationLog.alert_id == alert_id)
        .order_by(NotificationLog.created_at.asc())
    )
    return list(result.scalars().all())
