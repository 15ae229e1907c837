"""Tests for alert routing rule evaluation."""

import uuid
from datetime import UTC, datetime

import pytest

from pulsar_escalation.core.errors import RoutingRuleError
from pulsar_escalation.models.alert import Alert, AlertPriority, AlertStatus
from pulsar_escalation.models.routing_rule import AlertRoutingRule
from pulsar_escalation.schemas.routing import RoutingCondition, RoutingOperator
from pulsar_escalation.services.routing import (
    apply_routing_actions,
    conditions_match,
    evaluate_condition,
    evaluate_routing_rules,
    parse_rule,
)

NOW = datetime(2024, 1, 2, 12, tzinfo=UTC)


def make_alert(
    source: str = "prometheus",
    priority: AlertPriority = AlertPriority.P2,
    message: str = "Disk full on db-1",
    tags: list[str] | None = None,
    custom_fields: dict | None = None,
) -> Alert:
    return Alert(
        id=uuid.uuid4(),
        organization_id=uuid.uuid4(),
        source=source,
        priority=priority,
        status=AlertStatus.OPEN,
        message=message,
        description=None,
        tags=["db", "prod"] if tags is None else tags,
        custom_fields=(
            {"region": "eu-west-1", "replicas": 3, "critical": True}
            if custom_fields is None
            else custom_fields
        ),
    )


def make_rule(
    conditions: list[dict],
    actions: dict | None = None,
    priority: int = 10,
    enabled: bool = True,
    match: str = "all",
    name: str = "rule",
) -> AlertRoutingRule:
    return AlertRoutingRule(
        id=uuid.uuid4(),
        organization_id=uuid.uuid4(),
        name=name,
        priority=priority,
        enabled=enabled,
        conditions={"match": match, "conditions": conditions},
        actions=actions or {},
    )


def source_is(value: str) -> dict:
    return {"field": "source", "operator": "equals", "value": value}


# ── Rule selection ──


class TestEvaluateRoutingRules:
    """Tests for evaluate_routing_rules and apply_routing_actions."""

    def test_matching_rule_assigns_team_and_forces_priority(self):
        team_id = uuid.uuid4()
        rule = make_rule(
            [source_is("prometheus")],
            {"assign_team_id": str(team_id), "set_priority": "P1"},
        )
        alert = make_alert(priority=AlertPriority.P4)

        matched = evaluate_routing_rules(alert, [rule])
        suppressed = apply_routing_actions(alert, matched, NOW)

        assert matched.rule is rule
        assert suppressed is False
        assert alert.assigned_to_team_id == team_id
        assert alert.priority == AlertPriority.P1

    def test_lowest_priority_number_wins(self):
        late = make_rule([source_is("prometheus")], priority=20, name="late")
        early = make_rule([source_is("prometheus")], priority=5, name="early")

        matched = evaluate_routing_rules(make_alert(), [late, early])

        assert matched.rule is early

    def test_disabled_rule_is_skipped(self):
        disabled = make_rule([source_is("prometheus")], priority=1, enabled=False)
        enabled = make_rule([source_is("prometheus")], priority=2)

        matched = evaluate_routing_rules(make_alert(), [disabled, enabled])

        assert matched.rule is enabled

    def test_invalid_regex_rule_is_skipped(self):
        broken = make_rule(
            [{"field": "message", "operator": "regex", "value": "([unclosed"}],
            priority=1,
        )
        fallback = make_rule([source_is("prometheus")], priority=2)

        matched = evaluate_routing_rules(make_alert(), [broken, fallback])

        assert matched.rule is fallback

    def test_unknown_operator_rule_is_skipped(self):
        broken = make_rule(
            [{"field": "source", "operator": "between", "value": "a"}], priority=1
        )

        assert evaluate_routing_rules(make_alert(), [broken]) is None

    def test_no_match_returns_none(self):
        rule = make_rule([source_is("datadog")])

        assert evaluate_routing_rules(make_alert(), [rule]) is None

    def test_rule_without_conditions_never_matches(self):
        rule = make_rule([], {"suppress": True})

        assert evaluate_routing_rules(make_alert(), [rule]) is None


# ── Condition operators ──


class TestEvaluateCondition:
    """Tests for evaluate_condition across operators and fields."""

    @pytest.mark.parametrize(
        ("field", "operator", "value", "expected"),
        [
            ("source", "equals", "prometheus", True),
            ("source", "equals", "Prometheus", False),
            ("source", "not_equals", "datadog", True),
            ("message", "contains", "full", True),
            ("message", "not_contains", "cpu", True),
            ("message", "regex", r"^Disk .* db-\d+$", True),
            ("message", "starts_with", "Disk", True),
            ("message", "ends_with", "db-1", True),
            ("priority", "equals", "P2", True),
            ("replicas", "gte", 3, True),
            ("replicas", "gte", "10", False),
            ("replicas", "lte", 2.5, False),
            ("critical", "equals", True, True),
            ("region", "starts_with", "eu-", True),
            ("missing", "not_equals", "x", False),
            ("tags", "contains", "prod", True),
            ("tags", "contains", "pro", False),
            ("tags", "not_contains", "staging", True),
            ("tags", "equals", "db,prod", True),
        ],
    )
    def test_operator(self, field, operator, value, expected):
        condition = RoutingCondition(
            field=field, operator=RoutingOperator(operator), value=value
        )

        assert evaluate_condition(make_alert(), condition) is expected

    def test_match_any(self):
        rule = make_rule(
            [source_is("datadog"), source_is("prometheus")],
            match="any",
        )

        assert conditions_match(make_alert(), parse_rule(rule).conditions) is True

    def test_match_all_requires_every_condition(self):
        rule = make_rule([source_is("datadog"), source_is("prometheus")])

        assert conditions_match(make_alert(), parse_rule(rule).conditions) is False


# ── Actions ──


class TestApplyRoutingActions:
    """Tests for apply_routing_actions."""

    def test_suppress_closes_alert_and_skips_other_actions(self):
        team_id = uuid.uuid4()
        rule = make_rule(
            [source_is("prometheus")],
            {"suppress": True, "assign_team_id": str(team_id)},
            name="drop-noise",
        )
        alert = make_alert()

        suppressed = apply_routing_actions(alert, parse_rule(rule), NOW)

        assert suppressed is True
        assert alert.status == AlertStatus.CLOSED
        assert alert.closed_at == NOW
        assert alert.close_reason == "suppressed by routing rule drop-noise"
        assert alert.assigned_to_team_id is None

    def test_add_tags_keeps_existing_and_dedupes(self):
        rule = make_rule([source_is("prometheus")], {"add_tags": ["prod", "paged"]})
        alert = make_alert()

        apply_routing_actions(alert, parse_rule(rule), NOW)

        assert alert.tags == ["db", "prod", "paged"]

    def test_assigns_escalation_policy_and_user(self):
        policy_id, user_id = uuid.uuid4(), uuid.uuid4()
        rule = make_rule(
            [source_is("prometheus")],
            {
                "assign_escalation_policy_id": str(policy_id),
                "assign_user_id": str(user_id),
            },
        )
        alert = make_alert()

        apply_routing_actions(alert, parse_rule(rule), NOW)

        assert alert.escalation_policy_id == policy_id
        assert alert.assigned_to_user_id == user_id


class TestParseRule:
    """Tests for parse_rule."""

    def test_invalid_regex_raises_with_rule_id(self):
        rule = make_rule([{"field": "message", "operator": "regex", "value": "("}])

        with pytest.raises(RoutingRuleError) as exc_info:
            parse_rule(rule)

        assert exc_info.value.rule_id == rule.id

    def test_malformed_actions_raise(self):
        rule = make_rule([source_is("prometheus")], {"set_priority": "P9"})

        with pytest.raises(RoutingRuleError, match="Malformed routing rule"):
            parse_rule(rule)
