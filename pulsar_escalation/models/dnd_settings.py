"""Per-user do-not-disturb settings.

schedule holds recurring quiet hours:
    {"timezone": "Europe/Berlin",
     "weekly": [{"day": "monday", "start": "22:00", "end": "08:00"}]}
overrides holds absolute intervals:
    [{"start": "2026-05-01T00:00:00Z", "end": "...", "reason": "vacation"}]
"""

import uuid

from sqlalchemy import Boolean, ForeignKey
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pulsar_escalation.models.base import Base, TimestampMixin


class UserDNDSettings(Base, TimestampMixin):
    """Quiet hours for a single user. One row per user."""

    __tablename__ = "user_dnd_settings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    # P1 alerts still get through during quiet hours
    allow_p1_override: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )
    schedule: Mapped[dict | None] = mapped_column(
        JSONB,
        nullable=True,
    )
    overrides: Mapped[list | None] = mapped_column(
        JSONB,
        nullable=True,
    )

    user = relationship("User", back_populates="dnd_settings")

    def __repr__(self) -> str:
        return f"<UserDNDSettings(user={self.user_id}, enabled={self.enabled})>"
