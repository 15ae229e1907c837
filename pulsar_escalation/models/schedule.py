"""On-call schedules, rotations, participants and overrides.

A schedule holds one or more rotations, each cycling through an ordered
list of participants, plus ad-hoc overrides that replace whoever the
rotations would have picked for a fixed interval. Wall-clock fields
(start_date, start_time, end_time, handoff_time) are local to the
schedule's time zone.
"""

import enum
import uuid
from datetime import date, datetime, time

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pulsar_escalation.models.base import Base, TimestampMixin


class RotationType(str, enum.Enum):
    """Length unit of a rotation cycle."""

    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"  # rotation_length counted in days


class Schedule(Base, TimestampMixin):
    """An on-call schedule."""

    __tablename__ = "schedules"

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
    team_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("teams.id", ondelete="SET NULL"),
        nullable=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    description: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    timezone: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="UTC",
    )

    # Relationships
    rotations = relationship(
        "ScheduleRotation",
        back_populates="schedule",
        order_by="ScheduleRotation.created_at",
        cascade="all, delete-orphan",
    )
    overrides = relationship(
        "ScheduleOverride",
        back_populates="schedule",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Schedule(name={self.name}, timezone={self.timezone})>"


class ScheduleRotation(Base, TimestampMixin):
    """A repeating hand-off pattern across an ordered list of participants.

    Attributes:
        rotation_type: daily, weekly or custom (days)
        rotation_length: Units per participant turn, at least 1
        start_date: Local date the rotation begins
        start_time: Local time the rotation begins (and coverage begins each day)
        end_time: Local end of daily coverage; None means 24h coverage
        handoff_day: Weekday of the hand-off for weekly rotations, 0=Sunday
        handoff_time: Local time at which one participant hands to the next
    """

    __tablename__ = "schedule_rotations"
    __table_args__ = (
        CheckConstraint("rotation_length >= 1", name="ck_rotation_length_positive"),
        CheckConstraint(
            "handoff_day IS NULL OR (handoff_day >= 0 AND handoff_day <= 6)",
            name="ck_rotation_handoff_day_range",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    schedule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("schedules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    rotation_type: Mapped[RotationType] = mapped_column(
        Enum(
            RotationType,
            name="rotationtype",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )
    rotation_length: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )
    start_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
    )
    start_time: Mapped[time] = mapped_column(
        Time,
        nullable=False,
        default=time(0, 0),
    )
    end_time: Mapped[time | None] = mapped_column(
        Time,
        nullable=True,
    )
    handoff_day: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    handoff_time: Mapped[time | None] = mapped_column(
        Time,
        nullable=True,
    )

    schedule = relationship("Schedule", back_populates="rotations")
    participants = relationship(
        "ScheduleRotationParticipant",
        back_populates="rotation",
        order_by="ScheduleRotationParticipant.position",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return (
            f"<ScheduleRotation(name={self.name}, "
            f"type={self.rotation_type.value}, length={self.rotation_length})>"
        )


class ScheduleRotationParticipant(Base, TimestampMixin):
    """A user's slot in a rotation; positions are zero-based and contiguous."""

    __tablename__ = "schedule_rotation_participants"
    __table_args__ = (
        UniqueConstraint(
            "rotation_id", "user_id", name="uq_rotation_participants_rotation_user"
        ),
        UniqueConstraint(
            "rotation_id",
            "position",
            name="uq_rotation_participants_rotation_position",
            deferrable=True,
            initially="DEFERRED",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    rotation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("schedule_rotations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    rotation = relationship("ScheduleRotation", back_populates="participants")

    def __repr__(self) -> str:
        return (
            f"<ScheduleRotationParticipant(user={self.user_id}, "
            f"pos={self.position})>"
        )


class ScheduleOverride(Base):
    """Replaces the on-call user for the half-open interval [start_time, end_time)."""

    __tablename__ = "schedule_overrides"
    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_override_end_after_start"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    schedule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("schedules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    start_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    end_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    note: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    created_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    schedule = relationship("Schedule", back_populates="overrides")

    def __repr__(self) -> str:
        return (
            f"<ScheduleOverride(user={self.user_id}, "
            f"start={self.start_time}, end={self.end_time})>"
        )
