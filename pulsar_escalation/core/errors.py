"""Exception types raised by the escalation engine and its resolvers."""

import uuid


class EscalationEngineError(Exception):
    """Base class for engine errors."""


class ConfigurationError(EscalationEngineError):
    """Stored configuration is invalid; the offending item is skipped."""


class RotationConfigError(ConfigurationError):
    """A rotation definition cannot be resolved."""


class RoutingRuleError(ConfigurationError):
    """A routing rule cannot be evaluated (bad regex, malformed JSON)."""

    def __init__(self, message: str, rule_id: uuid.UUID | None = None):
        super().__init__(message)
        self.rule_id = rule_id


class TargetResolutionError(ConfigurationError):
    """An escalation target references something that no longer exists."""

    def __init__(self, target_type: str, target_id: uuid.UUID, message: str):
        super().__init__(f"{target_type} target {target_id}: {message}")
        self.target_type = target_type
        self.target_id = target_id


class ScheduleNotFoundError(EscalationEngineError):
    """Raised when a schedule id does not exist."""

    def __init__(self, schedule_id: uuid.UUID):
        super().__init__(f"Schedule {schedule_id} not found")
        self.schedule_id = schedule_id


class AlertNotFoundError(EscalationEngineError):
    """Raised when an alert id does not exist."""

    def __init__(self, alert_id: uuid.UUID):
        super().__init__(f"Alert {alert_id} not found")
        self.alert_id = alert_id


class InvalidAlertTransitionError(EscalationEngineError):
    """A human action is not allowed from the alert's current status."""


class NotificationDispatchError(EscalationEngineError):
    """Transient failure handing a notification to the dispatcher."""


class RotationNotFoundError(EscalationEngineError):
    """Raised when a rotation id does not exist."""

    def __init__(self, rotation_id: uuid.UUID):
        super().__init__(f"Rotation {rotation_id} not found")
        self.rotation_id = rotation_id
