"""Tests for the alert escalation engine."""

import asyncio
import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from pulsar_escalation.config import Settings
from pulsar_escalation.core.errors import NotificationDispatchError
from pulsar_escalation.models.alert import Alert, AlertPriority, AlertStatus
from pulsar_escalation.models.dnd_settings import UserDNDSettings
from pulsar_escalation.models.escalation_event import (
    EscalationEvent,
    EscalationEventType,
)
from pulsar_escalation.models.escalation_policy import EscalationPolicy, EscalationRule
from pulsar_escalation.models.notification import (
    ChannelType,
    NotificationLog,
    NotificationLogStatus,
)
from pulsar_escalation.services.escalation_engine import (
    AlertOutcome,
    EscalationEngine,
    EscalationState,
    StepAction,
    derive_escalation_state,
    plan_escalation_step,
)
from pulsar_escalation.services.escalation_targets import Recipient
from pulsar_escalation.services.notification_dispatcher import DeliveryResult
from tests.conftest import make_db_session

ENGINE = "pulsar_escalation.services.escalation_engine"

# Monday 2024-01-01 23:00 UTC
T0 = datetime(2024, 1, 1, 23, 0, tzinfo=UTC)


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


def make_policy(
    delays: tuple[int, ...] = (0, 15),
    repeat_enabled: bool = False,
    repeat_count: int | None = None,
) -> EscalationPolicy:
    """Create a policy whose rules fire after the given delays (minutes)."""
    return EscalationPolicy(
        id=uuid.uuid4(),
        organization_id=uuid.uuid4(),
        name="Default",
        repeat_enabled=repeat_enabled,
        repeat_count=repeat_count,
        rules=[
            EscalationRule(
                id=uuid.uuid4(), position=position, escalation_delay=delay, targets=[]
            )
            for position, delay in enumerate(delays)
        ],
    )


def make_alert(
    policy: EscalationPolicy | None,
    level: int = -1,
    repeat: int = 0,
    last_escalated_at: datetime | None = None,
    status: AlertStatus = AlertStatus.OPEN,
    priority: AlertPriority = AlertPriority.P2,
) -> Alert:
    """Create an alert enrolled in a policy at T0."""
    alert = Alert(
        id=uuid.uuid4(),
        organization_id=uuid.uuid4(),
        source="prometheus",
        priority=priority,
        status=status,
        message="API latency above 2s",
        description=None,
        tags=[],
        custom_fields={},
        escalation_policy_id=policy.id if policy else None,
        escalation_level=level,
        escalation_repeat_count=repeat,
        escalation_started_at=T0,
        last_escalated_at=last_escalated_at,
        created_at=T0,
    )
    alert.escalation_policy = policy
    return alert


def make_session_maker(session) -> MagicMock:
    """Session maker whose context manager yields the given session."""
    maker = MagicMock()
    maker.return_value.__aenter__ = AsyncMock(return_value=session)
    maker.return_value.__aexit__ = AsyncMock(return_value=False)
    return maker


def make_engine(session, dispatcher=None, **overrides) -> EscalationEngine:
    settings = Settings(
        escalation_alert_timeout_seconds=overrides.pop("timeout", 5.0),
        escalation_max_concurrency=overrides.pop("concurrency", 4),
        **overrides,
    )
    if dispatcher is None:
        dispatcher = AsyncMock()
        dispatcher.send.return_value = DeliveryResult(delivered=True)
    return EscalationEngine(make_session_maker(session), dispatcher, settings)


def added(session, model) -> list:
    return [
        c.args[0] for c in session.add.call_args_list if isinstance(c.args[0], model)
    ]


def apply_advance(alert: Alert):
    """Side effect mimicking the conditional UPDATE on the alert row."""

    async def advance(
        db, alert_id, expected_level, expected_repeat, new_level, new_repeat, now
    ):
        if (alert.escalation_level, alert.escalation_repeat_count) != (
            expected_level,
            expected_repeat,
        ):
            return False
        alert.escalation_level = new_level
        alert.escalation_repeat_count = new_repeat
        alert.last_escalated_at = now
        return True

    return advance


def apply_exhaust(alert: Alert):
    async def exhaust(db, alert_id, expected_level, expected_repeat, now):
        alert.escalation_completed_at = now
        return True

    return exhaust


def _patch(name: str):
    return patch(f"{ENGINE}.{name}", new_callable=AsyncMock)


@pytest.fixture
def collaborators():
    """Patch the engine's store and resolver collaborators."""
    recipient_user = uuid.uuid4()
    with (
        _patch("get_escalation_candidates") as candidates,
        _patch("lock_alert_for_escalation") as lock,
        _patch("advance_escalation") as advance,
        _patch("mark_escalation_exhausted") as exhaust,
        _patch("resolve_rule_recipients") as recipients,
        _patch("get_dnd_settings_for_users") as dnd,
        _patch("get_channel_preferences") as prefs,
        _patch("_get_users") as users,
    ):
        advance.return_value = True
        exhaust.return_value = True
        recipients.return_value = [
            Recipient(user_id=recipient_user, use_preferences=True)
        ]
        dnd.return_value = {}
        prefs.return_value = {}
        users.return_value = {}
        yield MagicMock(
            candidates=candidates,
            lock=lock,
            advance=advance,
            exhaust=exhaust,
            recipients=recipients,
            dnd=dnd,
            user_id=recipient_user,
        )


# ── State derivation and planning (pure logic) ──


class TestDeriveEscalationState:
    """Tests for derive_escalation_state."""

    def test_pending_before_first_rule(self):
        alert = make_alert(make_policy())

        assert derive_escalation_state(alert, T0) is EscalationState.PENDING

    def test_at_level_after_first_rule(self):
        alert = make_alert(make_policy(), level=0, last_escalated_at=T0)

        assert derive_escalation_state(alert, T0) is EscalationState.AT_LEVEL

    def test_not_enrolled_without_policy(self):
        alert = make_alert(None)

        assert derive_escalation_state(alert, T0) is EscalationState.NOT_ENROLLED

    def test_exhausted(self):
        alert = make_alert(make_policy(), level=1)
        alert.escalation_completed_at = T0

        assert derive_escalation_state(alert, T0) is EscalationState.EXHAUSTED

    def test_expired_snooze_behaves_like_open(self):
        alert = make_alert(make_policy(), status=AlertStatus.SNOOZED)
        alert.snoozed_at = T0
        alert.snoozed_until = T0 + minutes(10)

        state_during = derive_escalation_state(alert, T0 + minutes(5))
        state_after = derive_escalation_state(alert, T0 + minutes(10))

        assert state_during is EscalationState.SNOOZED
        assert state_after is EscalationState.PENDING


class TestPlanEscalationStep:
    """Tests for plan_escalation_step."""

    def test_first_rule_with_zero_delay_is_due_immediately(self):
        policy = make_policy()
        alert = make_alert(policy)

        step = plan_escalation_step(alert, policy, T0)

        assert step.action is StepAction.ADVANCE
        assert step.rule_index == 0
        assert step.rule is policy.rules[0]

    def test_second_rule_waits_for_its_delay(self):
        policy = make_policy()
        alert = make_alert(policy, level=0, last_escalated_at=T0)

        step = plan_escalation_step(alert, policy, T0 + minutes(10))

        assert step.action is StepAction.NOT_DUE
        assert step.due_at == T0 + minutes(15)

    def test_delay_counts_from_previous_step(self):
        policy = make_policy(delays=(0, 15))
        alert = make_alert(policy, level=0, last_escalated_at=T0 + minutes(3))

        assert plan_escalation_step(alert, policy, T0 + minutes(16)).action is (
            StepAction.NOT_DUE
        )
        assert plan_escalation_step(alert, policy, T0 + minutes(18)).action is (
            StepAction.ADVANCE
        )

    def test_last_rule_without_repeat_exhausts(self):
        policy = make_policy()
        alert = make_alert(policy, level=1, last_escalated_at=T0 + minutes(16))

        step = plan_escalation_step(alert, policy, T0 + minutes(30))

        assert step.action is StepAction.EXHAUST
        assert step.reason == "policy_exhausted"

    def test_step_already_taken_at_this_instant_is_not_due(self):
        policy = make_policy(delays=(0, 0))
        alert = make_alert(policy, level=0, last_escalated_at=T0)

        step = plan_escalation_step(alert, policy, T0)

        assert step.action is StepAction.NOT_DUE
        assert step.reason == "already_escalated"
        assert plan_escalation_step(alert, policy, T0 + minutes(1)).action is (
            StepAction.ADVANCE
        )

    def test_exhaust_waits_past_last_step_instant(self):
        policy = make_policy(delays=(0,))
        alert = make_alert(policy, level=0, last_escalated_at=T0)

        assert plan_escalation_step(alert, policy, T0).action is StepAction.NOT_DUE
        assert plan_escalation_step(alert, policy, T0 + minutes(1)).action is (
            StepAction.EXHAUST
        )

    def test_repeat_wraps_to_first_rule(self):
        policy = make_policy(delays=(5, 10), repeat_enabled=True, repeat_count=2)
        alert = make_alert(policy, level=1, last_escalated_at=T0 + minutes(15))

        step = plan_escalation_step(alert, policy, T0 + minutes(20))

        assert step.action is StepAction.ADVANCE
        assert step.rule_index == 0
        assert step.repeat_count == 1

    def test_repeat_budget_spent_exhausts(self):
        policy = make_policy(delays=(5, 10), repeat_enabled=True, repeat_count=2)
        alert = make_alert(policy, level=1, repeat=2, last_escalated_at=T0)

        step = plan_escalation_step(alert, policy, T0 + minutes(60))

        assert step.action is StepAction.EXHAUST

    def test_unlimited_repeat_keeps_wrapping(self):
        policy = make_policy(delays=(5,), repeat_enabled=True, repeat_count=None)
        alert = make_alert(policy, level=0, repeat=40, last_escalated_at=T0)

        step = plan_escalation_step(alert, policy, T0 + minutes(5))

        assert step.action is StepAction.ADVANCE
        assert step.repeat_count == 41

    def test_policy_without_rules_exhausts(self):
        policy = make_policy(delays=())
        alert = make_alert(policy)

        step = plan_escalation_step(alert, policy, T0)

        assert step.action is StepAction.EXHAUST
        assert step.reason == "no_rules"

    @pytest.mark.parametrize("status", [AlertStatus.ACKNOWLEDGED, AlertStatus.CLOSED])
    def test_acknowledged_or_closed_is_ineligible(self, status):
        policy = make_policy()
        alert = make_alert(policy, status=status)

        step = plan_escalation_step(alert, policy, T0 + minutes(60))

        assert step.action is StepAction.INELIGIBLE
        assert step.reason == status.value

    def test_active_snooze_is_ineligible(self):
        policy = make_policy()
        alert = make_alert(policy, status=AlertStatus.SNOOZED)
        alert.snoozed_at = T0
        alert.snoozed_until = T0 + minutes(30)

        step = plan_escalation_step(alert, policy, T0 + minutes(20))

        assert step.action is StepAction.INELIGIBLE
        assert step.reason == "snoozed"

    def test_snooze_shift_pushes_due_time(self):
        policy = make_policy(delays=(0, 15))
        alert = make_alert(policy, level=0, last_escalated_at=T0)
        alert.status = AlertStatus.SNOOZED
        alert.snoozed_at = T0 + minutes(1)
        alert.snoozed_until = T0 + minutes(11)

        plain = plan_escalation_step(alert, policy, T0 + minutes(16))
        shifted = plan_escalation_step(
            alert, policy, T0 + minutes(16), shift_due_by_snooze=True
        )

        assert plain.action is StepAction.ADVANCE
        assert shifted.action is StepAction.NOT_DUE
        assert shifted.due_at == T0 + minutes(25)


# ── Engine ──


class TestProcessPendingEscalations:
    """Tests for EscalationEngine.process_pending_escalations."""

    @pytest.mark.asyncio
    async def test_due_alert_is_advanced_and_notified(self, collaborators):
        policy = make_policy()
        alert = make_alert(policy)
        collaborators.candidates.return_value = [alert]
        collaborators.lock.return_value = alert
        session = make_db_session()
        engine = make_engine(session)

        report = await engine.process_pending_escalations(T0)

        assert report.candidates == 1
        assert report.advanced == 1
        assert report.notifications_sent == 1
        collaborators.advance.assert_awaited_once()
        kwargs = collaborators.advance.await_args.kwargs
        assert kwargs["expected_level"] == -1
        assert kwargs["new_level"] == 0
        engine._dispatcher.send.assert_awaited_once()
        user_id, channel, payload = engine._dispatcher.send.await_args.args
        assert user_id == collaborators.user_id
        assert channel is ChannelType.EMAIL
        assert payload.subject == "[P2] Alert Escalated: API latency above 2s"

        events = added(session, EscalationEvent)
        assert [e.event_type for e in events] == [EscalationEventType.ADVANCED]
        assert events[0].recipients_notified == [str(collaborators.user_id)]
        logs = added(session, NotificationLog)
        assert [log.status for log in logs] == [NotificationLogStatus.SENT]
        session.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_not_due_alert_is_left_alone(self, collaborators):
        policy = make_policy()
        alert = make_alert(policy, level=0, last_escalated_at=T0)
        collaborators.candidates.return_value = [alert]
        engine = make_engine(make_db_session())

        report = await engine.process_pending_escalations(T0 + minutes(10))

        assert report.not_due == 1
        collaborators.lock.assert_not_awaited()
        engine._dispatcher.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_locked_elsewhere_is_skipped(self, collaborators):
        alert = make_alert(make_policy())
        collaborators.candidates.return_value = [alert]
        collaborators.lock.return_value = None
        engine = make_engine(make_db_session())

        report = await engine.process_pending_escalations(T0)

        assert report.skipped == 1
        assert report.results[0].reason == "not_eligible"
        engine._dispatcher.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_acknowledged_while_queued_is_skipped(self, collaborators):
        """An ack that lands between candidate load and row lock stops the step."""
        policy = make_policy()
        queued = make_alert(policy)
        locked = make_alert(policy, status=AlertStatus.ACKNOWLEDGED)
        locked.id = queued.id
        collaborators.candidates.return_value = [queued]
        collaborators.lock.return_value = locked
        session = make_db_session()
        engine = make_engine(session)

        report = await engine.process_pending_escalations(T0)

        assert report.skipped == 1
        collaborators.advance.assert_not_awaited()
        engine._dispatcher.send.assert_not_awaited()
        session.rollback.assert_awaited()

    @pytest.mark.asyncio
    async def test_lost_race_is_skipped_without_event(self, collaborators):
        alert = make_alert(make_policy())
        collaborators.candidates.return_value = [alert]
        collaborators.lock.return_value = alert
        collaborators.advance.return_value = False
        session = make_db_session()
        engine = make_engine(session)

        report = await engine.process_pending_escalations(T0)

        assert report.skipped == 1
        assert report.results[0].reason == "lost_race"
        assert added(session, EscalationEvent) == []
        session.rollback.assert_awaited()

    @pytest.mark.asyncio
    async def test_dispatcher_outage_defers_step(self, collaborators):
        alert = make_alert(make_policy())
        collaborators.candidates.return_value = [alert]
        collaborators.lock.return_value = alert
        dispatcher = AsyncMock()
        dispatcher.send.side_effect = NotificationDispatchError("503")
        session = make_db_session()
        engine = make_engine(session, dispatcher)

        report = await engine.process_pending_escalations(T0)

        assert report.failed == 1
        assert report.results[0].reason == "dispatcher_unavailable"
        collaborators.advance.assert_not_awaited()
        events = added(session, EscalationEvent)
        assert [e.event_type for e in events] == [EscalationEventType.DISPATCH_FAILED]

    @pytest.mark.asyncio
    async def test_rejected_notification_still_advances(self, collaborators):
        alert = make_alert(make_policy())
        collaborators.candidates.return_value = [alert]
        collaborators.lock.return_value = alert
        dispatcher = AsyncMock()
        dispatcher.send.return_value = DeliveryResult(
            delivered=False, error="bad address"
        )
        session = make_db_session()
        engine = make_engine(session, dispatcher)

        report = await engine.process_pending_escalations(T0)

        assert report.advanced == 1
        logs = added(session, NotificationLog)
        assert logs[0].status is NotificationLogStatus.FAILED
        assert logs[0].error_message == "bad address"

    @pytest.mark.asyncio
    async def test_unexpected_send_error_is_logged_and_others_still_sent(
        self, collaborators
    ):
        alert = make_alert(make_policy())
        broken, healthy = uuid.uuid4(), uuid.uuid4()
        collaborators.candidates.return_value = [alert]
        collaborators.lock.return_value = alert
        collaborators.recipients.return_value = [
            Recipient(user_id=broken, use_preferences=True),
            Recipient(user_id=healthy, use_preferences=True),
        ]

        async def send(user_id, channel, payload):
            if user_id == broken:
                raise ValueError("Expecting value: line 1 column 1")
            return DeliveryResult(delivered=True)

        dispatcher = AsyncMock()
        dispatcher.send.side_effect = send
        session = make_db_session()
        engine = make_engine(session, dispatcher)

        report = await engine.process_pending_escalations(T0)

        assert report.advanced == 1
        logs = added(session, NotificationLog)
        failed = [log for log in logs if log.user_id == broken]
        assert {log.status for log in failed} == {NotificationLogStatus.FAILED}
        assert {log.reason for log in failed} == {"dispatch_error"}
        sent = [log for log in logs if log.user_id == healthy]
        assert {log.status for log in sent} == {NotificationLogStatus.SENT}

    @pytest.mark.asyncio
    async def test_dnd_suppresses_but_step_advances(self, collaborators):
        alert = make_alert(make_policy())
        collaborators.candidates.return_value = [alert]
        collaborators.lock.return_value = alert
        collaborators.dnd.return_value = {
            collaborators.user_id: UserDNDSettings(
                user_id=collaborators.user_id,
                enabled=True,
                allow_p1_override=False,
                schedule={
                    "timezone": "UTC",
                    "weekly": [{"day": "monday", "start": "22:00", "end": "08:00"}],
                },
                overrides=[],
            )
        }
        session = make_db_session()
        engine = make_engine(session)

        report = await engine.process_pending_escalations(T0)

        assert report.advanced == 1
        assert report.notifications_suppressed == 1
        engine._dispatcher.send.assert_not_awaited()
        logs = added(session, NotificationLog)
        assert logs[0].status is NotificationLogStatus.SUPPRESSED
        assert logs[0].reason == "dnd:quiet_hours"

    @pytest.mark.asyncio
    async def test_urgent_target_bypasses_dnd(self, collaborators):
        alert = make_alert(make_policy(), priority=AlertPriority.P1)
        collaborators.candidates.return_value = [alert]
        collaborators.lock.return_value = alert
        collaborators.recipients.return_value = [
            Recipient(user_id=collaborators.user_id, urgent=True, use_preferences=True)
        ]
        collaborators.dnd.return_value = {
            collaborators.user_id: UserDNDSettings(
                user_id=collaborators.user_id,
                enabled=True,
                allow_p1_override=False,
                schedule={
                    "timezone": "UTC",
                    "weekly": [{"day": "monday", "start": "22:00", "end": "08:00"}],
                },
                overrides=[],
            )
        }
        engine = make_engine(make_db_session())

        report = await engine.process_pending_escalations(T0)

        assert report.notifications_sent == 1
        payload = engine._dispatcher.send.await_args.args[2]
        assert payload.urgent is True

    @pytest.mark.asyncio
    async def test_exhausted_policy_marks_alert(self, collaborators):
        policy = make_policy()
        alert = make_alert(policy, level=1, last_escalated_at=T0)
        collaborators.candidates.return_value = [alert]
        collaborators.lock.return_value = alert
        session = make_db_session()
        engine = make_engine(session)

        report = await engine.process_pending_escalations(T0 + minutes(30))

        assert report.exhausted == 1
        collaborators.exhaust.assert_awaited_once()
        engine._dispatcher.send.assert_not_awaited()
        events = added(session, EscalationEvent)
        assert [e.event_type for e in events] == [EscalationEventType.EXHAUSTED]

    @pytest.mark.asyncio
    async def test_repeat_records_repeated_event(self, collaborators):
        policy = make_policy(delays=(0, 5), repeat_enabled=True, repeat_count=1)
        alert = make_alert(policy, level=1, last_escalated_at=T0)
        collaborators.candidates.return_value = [alert]
        collaborators.lock.return_value = alert
        session = make_db_session()
        engine = make_engine(session)

        await engine.process_pending_escalations(T0 + minutes(1))

        kwargs = collaborators.advance.await_args.kwargs
        assert (kwargs["new_level"], kwargs["new_repeat"]) == (0, 1)
        events = added(session, EscalationEvent)
        assert events[0].event_type is EscalationEventType.REPEATED

    @pytest.mark.asyncio
    async def test_one_failing_alert_does_not_abort_batch(self, collaborators):
        policy = make_policy()
        broken, healthy = make_alert(policy), make_alert(policy)
        collaborators.candidates.return_value = [broken, healthy]

        async def lock(db, alert_id, now):
            if alert_id == broken.id:
                raise RuntimeError("connection reset")
            return healthy

        collaborators.lock.side_effect = lock
        session = make_db_session()
        engine = make_engine(session)

        report = await engine.process_pending_escalations(T0)

        outcomes = {r.alert_id: r.outcome for r in report.results}
        assert outcomes == {
            broken.id: AlertOutcome.FAILED,
            healthy.id: AlertOutcome.ADVANCED,
        }
        session.rollback.assert_awaited()

    @pytest.mark.asyncio
    async def test_slow_alert_times_out(self, collaborators):
        alert = make_alert(make_policy())
        collaborators.candidates.return_value = [alert]

        async def hang(db, alert_id, now):
            await asyncio.sleep(5)

        collaborators.lock.side_effect = hang
        engine = make_engine(make_db_session(), timeout=0.05)

        report = await engine.process_pending_escalations(T0)

        assert report.failed == 1
        assert report.results[0].reason == "timeout"

    @pytest.mark.asyncio
    async def test_repeated_tick_at_same_instant_is_idempotent(self, collaborators):
        policy = make_policy()
        alert = make_alert(policy)
        collaborators.candidates.return_value = [alert]
        collaborators.lock.return_value = alert
        collaborators.advance.side_effect = apply_advance(alert)
        engine = make_engine(make_db_session())

        first = await engine.process_pending_escalations(T0)
        second = await engine.process_pending_escalations(T0)

        assert first.advanced == 1
        assert second.advanced == 0
        assert second.not_due == 1
        assert engine._dispatcher.send.await_count == 1

    @pytest.mark.asyncio
    async def test_zero_delay_rules_take_one_step_per_instant(self, collaborators):
        policy = make_policy(delays=(0, 0))
        alert = make_alert(policy)
        collaborators.candidates.return_value = [alert]
        collaborators.lock.return_value = alert
        collaborators.advance.side_effect = apply_advance(alert)
        engine = make_engine(make_db_session())

        await engine.process_pending_escalations(T0)
        second = await engine.process_pending_escalations(T0)

        assert second.advanced == 0
        assert second.not_due == 1
        assert alert.escalation_level == 0
        assert engine._dispatcher.send.await_count == 1

        later = await engine.process_pending_escalations(T0 + minutes(1))
        assert later.advanced == 1
        assert alert.escalation_level == 1

    @pytest.mark.asyncio
    async def test_single_zero_delay_rule_does_not_exhaust_same_instant(
        self, collaborators
    ):
        policy = make_policy(delays=(0,))
        alert = make_alert(policy)
        collaborators.candidates.return_value = [alert]
        collaborators.lock.return_value = alert
        collaborators.advance.side_effect = apply_advance(alert)
        collaborators.exhaust.side_effect = apply_exhaust(alert)
        engine = make_engine(make_db_session())

        first = await engine.process_pending_escalations(T0)
        second = await engine.process_pending_escalations(T0)

        assert first.advanced == 1
        assert second.exhausted == 0
        collaborators.exhaust.assert_not_awaited()
        assert alert.escalation_completed_at is None

    @pytest.mark.asyncio
    async def test_duration_is_wall_time_not_tick_clock(self, collaborators):
        collaborators.candidates.return_value = []
        engine = make_engine(make_db_session())

        report = await engine.process_pending_escalations(T0)

        duration_ms = report.summary()["duration_ms"]
        assert 0 <= duration_ms < 60_000
        assert report.finished_at >= report.started_at == T0

    @pytest.mark.asyncio
    async def test_two_rule_policy_walkthrough(self, collaborators):
        """Delays 0 and 15, no repeat: advance, wait, advance, exhaust."""
        policy = make_policy(delays=(0, 15))
        alert = make_alert(policy)
        first_responder, second_responder = uuid.uuid4(), uuid.uuid4()
        responders = {
            policy.rules[0].id: first_responder,
            policy.rules[1].id: second_responder,
        }

        async def candidates(db, now, limit):
            return [] if alert.escalation_completed_at else [alert]

        async def recipients(db, rule, now):
            return [Recipient(user_id=responders[rule.id], use_preferences=True)]

        collaborators.candidates.side_effect = candidates
        collaborators.lock.return_value = alert
        collaborators.recipients.side_effect = recipients
        collaborators.advance.side_effect = apply_advance(alert)
        collaborators.exhaust.side_effect = apply_exhaust(alert)
        engine = make_engine(make_db_session())
        send = engine._dispatcher.send

        await engine.process_pending_escalations(T0)
        assert alert.escalation_level == 0
        assert send.await_args.args[0] == first_responder

        await engine.process_pending_escalations(T0 + minutes(10))
        assert alert.escalation_level == 0
        assert send.await_count == 1

        await engine.process_pending_escalations(T0 + minutes(16))
        assert alert.escalation_level == 1
        assert send.await_args.args[0] == second_responder

        report = await engine.process_pending_escalations(T0 + minutes(30))
        assert report.exhausted == 1
        assert derive_escalation_state(alert, T0 + minutes(30)) is (
            EscalationState.EXHAUSTED
        )

        report = await engine.process_pending_escalations(T0 + minutes(45))
        assert report.candidates == 0
        assert alert.escalation_level == 1
        assert send.await_count == 2


class TestPruneDNDOverrides:
    """Tests for EscalationEngine.prune_dnd_overrides."""

    @pytest.mark.asyncio
    async def test_delegates_with_its_own_session(self):
        session = make_db_session()
        engine = make_engine(session)

        with patch(
            f"{ENGINE}.prune_expired_dnd_overrides",
            new_callable=AsyncMock,
            return_value=3,
        ) as mock_prune:
            removed = await engine.prune_dnd_overrides(T0)

        assert removed == 3
        mock_prune.assert_awaited_once_with(session, T0)
