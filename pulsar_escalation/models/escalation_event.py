"""Escalation event model.

Audit trail of the escalation state machine: one row every time an alert
advances to a rule, starts a new repeat cycle, exhausts its policy, or
fails to reach anyone because the dispatcher was unavailable.
"""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pulsar_escalation.models.base import Base


class EscalationEventType(str, enum.Enum):
    """What happened to the alert."""

    ADVANCED = "advanced"
    REPEATED = "repeated"  # advanced to rule 0 of a new repeat cycle
    EXHAUSTED = "exhausted"
    DISPATCH_FAILED = "dispatch_failed"


class EscalationEvent(Base):
    """Records one escalation step for an alert."""

    __tablename__ = "escalation_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    alert_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("alerts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    policy_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("escalation_policies.id", ondelete="SET NULL"),
        nullable=True,
    )
    rule_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("escalation_rules.id", ondelete="SET NULL"),
        nullable=True,
    )
    event_type: Mapped[EscalationEventType] = mapped_column(
        Enum(
            EscalationEventType,
            name="escalationeventtype",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )
    level: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    repeat_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    # User UUIDs (as strings) that were handed to the dispatcher
    recipients_notified: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
    )
    reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    triggered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    alert = relationship("Alert", back_populates="escalation_events")

    def __repr__(self) -> str:
        return (
            f"<EscalationEvent(type={self.event_type.value}, "
            f"alert={self.alert_id}, level={self.level})>"
        )
