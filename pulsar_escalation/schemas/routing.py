"""Routing rule condition and action documents.

These models validate the JSON stored in AlertRoutingRule.conditions and
AlertRoutingRule.actions before a rule is evaluated.
"""

import enum
import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field

from pulsar_escalation.models.alert import AlertPriority


class RoutingOperator(str, enum.Enum):
    """Comparison applied between an alert field and a condition value."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    REGEX = "regex"
    GTE = "gte"
    LTE = "lte"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


class RoutingCondition(BaseModel):
    """A single field comparison.

    field is one of source, priority, message, description or tags; any
    other name is looked up in the alert's custom_fields.
    """

    field: str = Field(min_length=1)
    operator: RoutingOperator
    value: Any = None


class RoutingConditions(BaseModel):
    """Condition block: all conditions must hold, or any one of them."""

    match: Literal["all", "any"] = "all"
    conditions: list[RoutingCondition] = Field(default_factory=list)


class RoutingActions(BaseModel):
    """What to do with an alert once its rule matches."""

    assign_team_id: uuid.UUID | None = None
    assign_user_id: uuid.UUID | None = None
    assign_escalation_policy_id: uuid.UUID | None = None
    set_priority: AlertPriority | None = None
    add_tags: list[str] = Field(default_factory=list)
    suppress: bool = False
