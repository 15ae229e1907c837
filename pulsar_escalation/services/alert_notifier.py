"""Escalation notification content.

Builds the subject and body handed to the external dispatcher when an
alert escalates.
"""

import uuid
from dataclasses import dataclass, field

from pulsar_escalation.models.alert import Alert, AlertPriority
from pulsar_escalation.models.notification import ChannelType

PRIORITY_LABEL: dict[AlertPriority, str] = {
    AlertPriority.P1: "Critical",
    AlertPriority.P2: "High",
    AlertPriority.P3: "Moderate",
    AlertPriority.P4: "Low",
    AlertPriority.P5: "Informational",
}

NO_DESCRIPTION = "No additional description provided."


@dataclass(frozen=True)
class NotificationPayload:
    """Everything the dispatcher needs to deliver one notification."""

    alert_id: uuid.UUID
    subject: str
    message: str
    priority: AlertPriority
    escalation_level: int
    urgent: bool = False
    address: str | None = None
    metadata: dict = field(default_factory=dict)

    def to_json(self, user_id: uuid.UUID, channel: ChannelType) -> dict:
        return {
            "user_id": str(user_id),
            "channel": channel.value,
            "address": self.address,
            "alert_id": str(self.alert_id),
            "subject": self.subject,
            "message": self.message,
            "priority": self.priority.value,
            "escalation_level": self.escalation_level,
            "urgent": self.urgent,
            "metadata": self.metadata,
        }


def build_escalation_subject(alert: Alert) -> str:
    """Subject line, e.g. "[P1] Alert Escalated: disk full on db-1"."""
    return f"[{alert.priority.value}] Alert Escalated: {alert.message}"


def build_escalation_message(alert: Alert, level: int, repeat_count: int = 0) -> str:
    """Plain-text body describing the alert and how far it has escalated.

    Args:
        alert: The alert being escalated
        level: Zero-based index of the rule that is firing
        repeat_count: Completed passes through the policy

    Returns:
        Message body
    """
    label = PRIORITY_LABEL.get(alert.priority, "")
    lines = [
        f"Alert ID: {alert.id}",
        f"Priority: {alert.priority.value} ({label})",
        f"Status: {alert.status.value}",
        f"Source: {alert.source}",
        f"Message: {alert.message}",
        f"Escalation Level: {level + 1}",
    ]
    if repeat_count:
        lines.append(f"Repeat: {repeat_count}")
    if alert.tags:
        lines.append(f"Tags: {', '.join(alert.tags)}")
    lines.append("")
    lines.append(alert.description or NO_DESCRIPTION)
    return "\n".join(lines)
