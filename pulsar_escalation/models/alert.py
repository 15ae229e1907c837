"""Alert model and its escalation bookkeeping.

escalation_level is the index of the last rule that fired (-1 before the
first one) and escalation_repeat_count the number of completed passes
through the policy. escalation_completed_at marks a chain that has run
out of rules and repeats.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pulsar_escalation.models.base import Base, TimestampMixin


class AlertStatus(str, enum.Enum):
    """Lifecycle status of an alert."""

    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    CLOSED = "closed"
    SNOOZED = "snoozed"


class AlertPriority(str, enum.Enum):
    """Alert priority, P1 being the most urgent."""

    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"
    P5 = "P5"

    @property
    def rank(self) -> int:
        """Numeric rank; lower is more urgent."""
        return int(self.value[1:])


class Alert(Base, TimestampMixin):
    """An alert raised by an external source."""

    __tablename__ = "alerts"
    __table_args__ = (
        Index(
            "ix_alerts_escalation_candidates",
            "status",
            "escalation_policy_id",
            postgresql_where=text(
                "escalation_policy_id IS NOT NULL "
                "AND escalation_completed_at IS NULL"
            ),
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

    # Origin of the alert, e.g. "prometheus" or "datadog"
    source: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    source_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    priority: Mapped[AlertPriority] = mapped_column(
        Enum(
            AlertPriority,
            name="alertpriority",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=AlertPriority.P3,
    )
    status: Mapped[AlertStatus] = mapped_column(
        Enum(
            AlertStatus,
            name="alertstatus",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=AlertStatus.OPEN,
    )
    message: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    tags: Mapped[list[str]] = mapped_column(
        ARRAY(String),
        nullable=False,
        default=list,
    )
    custom_fields: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
    )

    # Assignment (set by routing rules or by hand)
    assigned_to_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    assigned_to_team_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("teams.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Escalation state
    escalation_policy_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("escalation_policies.id", ondelete="SET NULL"),
        nullable=True,
    )
    escalation_level: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=-1,
    )
    escalation_repeat_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    # Reference point for the first rule's delay; reset when a policy is assigned
    escalation_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_escalated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    escalation_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Human actions
    acknowledged_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    acknowledged_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    closed_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    close_reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    snoozed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    snoozed_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    escalation_policy = relationship("EscalationPolicy")
    escalation_events = relationship(
        "EscalationEvent",
        back_populates="alert",
        order_by="EscalationEvent.triggered_at",
    )

    def __repr__(self) -> str:
        return (
            f"<Alert(priority={self.priority.value}, status={self.status.value}, "
            f"level={self.escalation_level})>"
        )
