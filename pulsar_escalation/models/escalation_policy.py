"""Escalation policies, their ordered rules and per-rule targets."""

import enum
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pulsar_escalation.models.base import Base, TimestampMixin


class TargetType(str, enum.Enum):
    """Kind of entity an escalation target points at."""

    USER = "user"
    TEAM = "team"
    SCHEDULE = "schedule"


class EscalationPolicy(Base, TimestampMixin):
    """An ordered chain of escalation rules.

    When the last rule has fired the chain starts over from the first rule
    if repeat_enabled is set, at most repeat_count additional times
    (None means forever).
    """

    __tablename__ = "escalation_policies"

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
    repeat_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    repeat_count: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )

    rules = relationship(
        "EscalationRule",
        back_populates="policy",
        order_by="EscalationRule.position",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<EscalationPolicy(name={self.name}, repeat={self.repeat_enabled})>"


class EscalationRule(Base, TimestampMixin):
    """One step of a policy: wait escalation_delay minutes, then notify targets."""

    __tablename__ = "escalation_rules"
    __table_args__ = (
        UniqueConstraint("policy_id", "position", name="uq_escalation_rules_position"),
        CheckConstraint("escalation_delay >= 0", name="ck_escalation_delay_nonneg"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("escalation_policies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    # Minutes to wait after the previous step before this rule fires
    escalation_delay: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    policy = relationship("EscalationPolicy", back_populates="rules")
    targets = relationship(
        "EscalationTarget",
        back_populates="rule",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<EscalationRule(pos={self.position}, delay={self.escalation_delay})>"


class EscalationTarget(Base, TimestampMixin):
    """Who a rule notifies.

    notification_channels optionally overrides the recipients' own channel
    preferences: {"channels": ["email", "slack"], "urgent": true}. An
    urgent target may bypass DND when the deployment allows it.
    """

    __tablename__ = "escalation_targets"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    rule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("escalation_rules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    target_type: Mapped[TargetType] = mapped_column(
        Enum(
            TargetType,
            name="escalationtargettype",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )
    # Not a foreign key: points at users, teams or schedules depending on type
    target_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    notification_channels: Mapped[dict | None] = mapped_column(
        JSONB,
        nullable=True,
    )

    rule = relationship("EscalationRule", back_populates="targets")

    def __repr__(self) -> str:
        return f"<EscalationTarget(type={self.target_type.value}, id={self.target_id})>"
