# Database Models
from pulsar_escalation.models.alert import Alert, AlertPriority, AlertStatus
from pulsar_escalation.models.base import Base, TimestampMixin
from pulsar_escalation.models.dnd_settings import UserDNDSettings
from pulsar_escalation.models.escalation_event import (
    EscalationEvent,
    EscalationEventType,
)
from pulsar_escalation.models.escalation_policy import (
    EscalationPolicy,
    EscalationRule,
    EscalationTarget,
    TargetType,
)
from pulsar_escalation.models.notification import (
    ChannelType,
    NotificationLog,
    NotificationLogStatus,
    UserNotificationChannel,
)
from pulsar_escalation.models.routing_rule import AlertRoutingRule
from pulsar_escalation.models.schedule import (
    RotationType,
    Schedule,
    ScheduleOverride,
    ScheduleRotation,
    ScheduleRotationParticipant,
)
from pulsar_escalation.models.user import Team, TeamMember, TeamRole, User

__all__ = [
    "Alert",
    "AlertPriority",
    "AlertRoutingRule",
    "AlertStatus",
    "Base",
    "ChannelType",
    "EscalationEvent",
    "EscalationEventType",
    "EscalationPolicy",
    "EscalationRule",
    "EscalationTarget",
    "NotificationLog",
    "NotificationLogStatus",
    "RotationType",
    "Schedule",
    "ScheduleOverride",
    "ScheduleRotation",
    "ScheduleRotationParticipant",
    "TargetType",
    "Team",
    "TeamMember",
    "TeamRole",
    "TimestampMixin",
    "User",
    "UserDNDSettings",
    "UserNotificationChannel",
]
