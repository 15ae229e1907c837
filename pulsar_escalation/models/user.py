"""Users and teams.

These rows are owned by the surrounding platform; the engine only reads
them to resolve escalation targets.
"""

import enum
import uuid

from sqlalchemy import Boolean, Enum, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pulsar_escalation.models.base import Base, TimestampMixin


class TeamRole(str, enum.Enum):
    """Role of a user within a team."""

    MEMBER = "member"
    LEAD = "lead"


class User(Base, TimestampMixin):
    """A person who can be paged.

    Attributes:
        id: Unique user identifier (UUID)
        organization_id: Owning organization
        email: Contact email, also the default email channel address
        full_name: Display name used in notifications
        timezone: IANA zone the user lives in
        is_active: Inactive users are never notified
    """

    __tablename__ = "users"

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
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    full_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )
    timezone: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="UTC",
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    # Relationships
    team_memberships = relationship("TeamMember", back_populates="user")
    notification_channels = relationship(
        "UserNotificationChannel", back_populates="user"
    )
    dnd_settings = relationship("UserDNDSettings", back_populates="user", uselist=False)

    def __repr__(self) -> str:
        return f"<User(email={self.email}, active={self.is_active})>"


class Team(Base, TimestampMixin):
    """A group of users that can be targeted as a whole."""

    __tablename__ = "teams"

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

    members = relationship("TeamMember", back_populates="team")

    def __repr__(self) -> str:
        return f"<Team(name={self.name})>"


class TeamMember(Base, TimestampMixin):
    """Membership of a user in a team."""

    __tablename__ = "team_members"
    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_team_members_team_user"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    team_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[TeamRole] = mapped_column(
        Enum(
            TeamRole,
            name="teamrole",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=TeamRole.MEMBER,
    )

    team = relationship("Team", back_populates="members")
    user = relationship("User", back_populates="team_memberships")
