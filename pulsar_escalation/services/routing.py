"""Alert routing rule evaluation.

Rules are tried in ascending priority order; the first enabled rule whose
condition block holds wins and its actions are applied to the new alert.
Comparisons are case-sensitive and operate on string forms of the alert
fields. A rule that cannot be parsed, or that carries an invalid regular
expression, is skipped and logged; evaluation continues with the next
rule.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulsar_escalation.core.errors import RoutingRuleError
from pulsar_escalation.logging_config import get_logger
from pulsar_escalation.models.alert import Alert, AlertStatus
from pulsar_escalation.models.routing_rule import AlertRoutingRule
from pulsar_escalation.schemas.routing import (
    RoutingActions,
    RoutingCondition,
    RoutingConditions,
    RoutingOperator,
)

logger = get_logger(__name__)

TAGS_FIELD = "tags"


@dataclass(frozen=True)
class ParsedRule:
    """A routing rule with its JSON documents validated."""

    rule: AlertRoutingRule
    conditions: RoutingConditions
    actions: RoutingActions


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if hasattr(value, "value") and isinstance(value.value, str):
        return value.value
    return str(value)


def _field_value(alert: Alert, field: str) -> str | list[str] | None:
    """Value of a condition field on an alert; None if the field is absent."""
    if field == "source":
        return alert.source or ""
    if field == "priority":
        return _stringify(alert.priority)
    if field == "message":
        return alert.message or ""
    if field == "description":
        return alert.description or ""
    if field == TAGS_FIELD:
        return list(alert.tags or [])

    custom_fields = alert.custom_fields or {}
    if field not in custom_fields:
        return None
    return _stringify(custom_fields[field])


def _as_number(value: str) -> float | None:
    try:
        return float(value)
    except ValueError:
        return None


def _compare(operator: RoutingOperator, actual: str, expected: str) -> bool:
    if operator is RoutingOperator.EQUALS:
        return actual == expected
    if operator is RoutingOperator.NOT_EQUALS:
        return actual != expected
    if operator is RoutingOperator.CONTAINS:
        return expected in actual
    if operator is RoutingOperator.NOT_CONTAINS:
        return expected not in actual
    if operator is RoutingOperator.STARTS_WITH:
        return actual.startswith(expected)
    if operator is RoutingOperator.ENDS_WITH:
        return actual.endswith(expected)
    if operator is RoutingOperator.REGEX:
        return re.search(expected, actual) is not None
    if operator in (RoutingOperator.GTE, RoutingOperator.LTE):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            left, right = actual, expected
        if operator is RoutingOperator.GTE:
            return left >= right
        return left <= right
    raise RoutingRuleError(f"Unsupported operator: {operator}")


def evaluate_condition(alert: Alert, condition: RoutingCondition) -> bool:
    """Evaluate a single condition against an alert.

    A condition on a custom field the alert does not carry is false.
    """
    actual = _field_value(alert, condition.field)
    if actual is None:
        return False

    expected = _stringify(condition.value)

    if isinstance(actual, list):
        if condition.operator is RoutingOperator.CONTAINS:
            return expected in actual
        if condition.operator is RoutingOperator.NOT_CONTAINS:
            return expected not in actual
        actual = ",".join(actual)

    return _compare(condition.operator, actual, expected)


def conditions_match(alert: Alert, conditions: RoutingConditions) -> bool:
    """Whether a condition block holds; an empty block never matches."""
    if not conditions.conditions:
        return False
    results = (evaluate_condition(alert, c) for c in conditions.conditions)
    if conditions.match == "any":
        return any(results)
    return all(results)


def parse_rule(rule: AlertRoutingRule) -> ParsedRule:
    """Validate a rule's stored conditions and actions.

    Raises:
        RoutingRuleError: If either document is malformed or a regex
            condition does not compile
    """
    try:
        conditions = RoutingConditions.model_validate(rule.conditions or {})
        actions = RoutingActions.model_validate(rule.actions or {})
    except ValidationError as e:
        raise RoutingRuleError(
            f"Malformed routing rule {rule.name!r}: {e.error_count()} error(s)",
            rule_id=rule.id,
        ) from e

    for condition in conditions.conditions:
        if condition.operator is RoutingOperator.REGEX:
            try:
                re.compile(_stringify(condition.value))
            except re.error as e:
                raise RoutingRuleError(
                    f"Invalid regex in routing rule {rule.name!r}: {e}",
                    rule_id=rule.id,
                ) from e

    return ParsedRule(rule=rule, conditions=conditions, actions=actions)


def evaluate_routing_rules(
    alert: Alert,
    rules: list[AlertRoutingRule],
) -> ParsedRule | None:
    """Find the first enabled rule whose conditions hold for an alert.

    Args:
        alert: The incoming alert (not yet persisted)
        rules: Candidate rules for the alert's organization

    Returns:
        The matching rule with its parsed actions, or None
    """
    for rule in sorted(rules, key=lambda r: r.priority):
        if not rule.enabled:
            continue

        try:
            parsed = parse_rule(rule)
        except RoutingRuleError as e:
            logger.warning(
                "Skipping invalid routing rule",
                rule_id=str(rule.id),
                error=str(e),
            )
            continue

        if conditions_match(alert, parsed.conditions):
            logger.info(
                "Routing rule matched",
                rule_id=str(rule.id),
                rule_name=rule.name,
                rule_priority=rule.priority,
            )
            return parsed

    logger.debug("No routing rule matched", source=alert.source)
    return None


def apply_routing_actions(alert: Alert, parsed: ParsedRule, now: datetime) -> bool:
    """Apply a matched rule's actions to an alert.

    Suppression is terminal: the alert is closed with the rule named as the
    reason and no other action is applied.

    Returns:
        True if the alert was suppressed
    """
    actions = parsed.actions

    if actions.suppress:
        alert.status = AlertStatus.CLOSED
        alert.closed_at = now
        alert.close_reason = f"suppressed by routing rule {parsed.rule.name}"
        return True

    if actions.assign_team_id is not None:
        alert.assigned_to_team_id = actions.assign_team_id
    if actions.assign_user_id is not None:
        alert.assigned_to_user_id = actions.assign_user_id
    if actions.assign_escalation_policy_id is not None:
        alert.escalation_policy_id = actions.assign_escalation_policy_id
    if actions.set_priority is not None:
        alert.priority = actions.set_priority
    if actions.add_tags:
        tags = list(alert.tags or [])
        for tag in actions.add_tags:
            if tag not in tags:
                tags.append(tag)
        alert.tags = tags

    return False


async def get_routing_rules(
    db: AsyncSession,
    organization_id: uuid.UUID,
) -> list[AlertRoutingRule]:
    """Enabled routing rules of an organization, in evaluation order."""
    result = await db.execute(
        select(AlertRoutingRule)
        .where(
            AlertRoutingRule.organization_id == organization_id,
            AlertRoutingRule.enabled.is_(True),
        )
        .order_by(AlertRoutingRule.priority.asc())
    )
    return list(result.scalars().all())
