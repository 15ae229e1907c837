"""Notification channel preferences and the per-attempt delivery log."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pulsar_escalation.models.alert import AlertPriority
from pulsar_escalation.models.base import Base, TimestampMixin


class ChannelType(str, enum.Enum):
    """Delivery channel handled by the external dispatcher."""

    EMAIL = "email"
    SLACK = "slack"
    TEAMS = "teams"
    WEBHOOK = "webhook"
    PUSH = "push"
    SMS = "sms"


class NotificationLogStatus(str, enum.Enum):
    """Outcome of a single notification attempt."""

    SENT = "sent"
    FAILED = "failed"
    SUPPRESSED = "suppressed"  # blocked by do-not-disturb
    SKIPPED = "skipped"  # recipient had no usable channel


class UserNotificationChannel(Base, TimestampMixin):
    """A channel a user wants to be paged on."""

    __tablename__ = "user_notification_channels"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    channel: Mapped[ChannelType] = mapped_column(
        Enum(
            ChannelType,
            name="channeltype",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )
    # Email address, Slack member id, webhook URL, ...
    address: Mapped[str | None] = mapped_column(
        String(512),
        nullable=True,
    )
    is_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )
    # Alerts less urgent than this are not sent on this channel
    min_priority: Mapped[AlertPriority | None] = mapped_column(
        Enum(
            AlertPriority,
            name="alertpriority",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=True,
    )

    user = relationship("User", back_populates="notification_channels")

    def accepts(self, priority: AlertPriority) -> bool:
        """Whether an alert of this priority may be sent on the channel."""
        if not self.is_enabled:
            return False
        if self.min_priority is None:
            return True
        return priority.rank <= self.min_priority.rank

    def __repr__(self) -> str:
        return (
            f"<UserNotificationChannel(channel={self.channel.value}, "
            f"user={self.user_id})>"
        )


class NotificationLog(Base):
    """One row per notification attempt made while escalating an alert."""

    __tablename__ = "notification_logs"

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
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    channel: Mapped[ChannelType | None] = mapped_column(
        Enum(
            ChannelType,
            name="channeltype",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=True,
    )
    escalation_level: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    status: Mapped[NotificationLogStatus] = mapped_column(
        Enum(
            NotificationLogStatus,
            name="notificationlogstatus",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )
    reason: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    subject: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        channel = self.channel.value if self.channel else None
        return (
            f"<NotificationLog(alert={self.alert_id}, user={self.user_id}, "
            f"channel={channel}, status={self.status.value})>"
        )
