"""Alert routing rules.

Rules are evaluated in ascending priority order against each new alert;
the first enabled rule whose conditions hold applies its actions. The
conditions and actions columns hold JSON documents validated by
pulsar_escalation.schemas.routing.
"""

import uuid

from sqlalchemy import Boolean, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from pulsar_escalation.models.base import Base, TimestampMixin


class AlertRoutingRule(Base, TimestampMixin):
    """A condition block paired with the actions to apply when it matches."""

    __tablename__ = "alert_routing_rules"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "priority", name="uq_routing_rules_org_priority"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    # Lower values are evaluated first
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )
    conditions: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
    )
    actions: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
    )

    def __repr__(self) -> str:
        return f"<AlertRoutingRule(name={self.name}, priority={self.priority})>"
