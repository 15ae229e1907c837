"""Create escalation engine schema.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

ENUMS = {
    "teamrole": ("member", "lead"),
    "rotationtype": ("daily", "weekly", "custom"),
    "escalationtargettype": ("user", "team", "schedule"),
    "alertpriority": ("P1", "P2", "P3", "P4", "P5"),
    "alertstatus": ("open", "acknowledged", "closed", "snoozed"),
    "channeltype": ("email", "slack", "teams", "webhook", "push", "sms"),
    "notificationlogstatus": ("sent", "failed", "suppressed", "skipped"),
    "escalationeventtype": ("advanced", "repeated", "exhausted", "dispatch_failed"),
}


def _uuid_pk() -> sa.Column:
    return sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def _fk(column: str, target: str, ondelete: str = "CASCADE", **kwargs) -> sa.Column:
    return sa.Column(
        column,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey(target, ondelete=ondelete),
        **kwargs,
    )


def upgrade() -> None:
    enums = {
        name: postgresql.ENUM(*values, name=name, create_type=False)
        for name, values in ENUMS.items()
    }
    for enum_type in enums.values():
        enum_type.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "users",
        _uuid_pk(),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        *_timestamps(),
    )
    op.create_index("ix_users_organization_id", "users", ["organization_id"])

    op.create_table(
        "teams",
        _uuid_pk(),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_teams_organization_id", "teams", ["organization_id"])

    op.create_table(
        "team_members",
        _uuid_pk(),
        _fk("team_id", "teams.id", nullable=False),
        _fk("user_id", "users.id", nullable=False),
        sa.Column(
            "role", enums["teamrole"], nullable=False, server_default="member"
        ),
        *_timestamps(),
        sa.UniqueConstraint("team_id", "user_id", name="uq_team_members_team_user"),
    )
    op.create_index("ix_team_members_team_id", "team_members", ["team_id"])
    op.create_index("ix_team_members_user_id", "team_members", ["user_id"])

    op.create_table(
        "schedules",
        _uuid_pk(),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        _fk("team_id", "teams.id", ondelete="SET NULL", nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        *_timestamps(),
    )
    op.create_index("ix_schedules_organization_id", "schedules", ["organization_id"])

    op.create_table(
        "schedule_rotations",
        _uuid_pk(),
        _fk("schedule_id", "schedules.id", nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("rotation_type", enums["rotationtype"], nullable=False),
        sa.Column("rotation_length", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False, server_default="00:00"),
        sa.Column("end_time", sa.Time(), nullable=True),
        sa.Column("handoff_day", sa.Integer(), nullable=True),
        sa.Column("handoff_time", sa.Time(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("rotation_length >= 1", name="ck_rotation_length_positive"),
        sa.CheckConstraint(
            "handoff_day IS NULL OR (handoff_day >= 0 AND handoff_day <= 6)",
            name="ck_rotation_handoff_day_range",
        ),
    )
    op.create_index(
        "ix_schedule_rotations_schedule_id", "schedule_rotations", ["schedule_id"]
    )

    op.create_table(
        "schedule_rotation_participants",
        _uuid_pk(),
        _fk("rotation_id", "schedule_rotations.id", nullable=False),
        _fk("user_id", "users.id", nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "rotation_id", "user_id", name="uq_rotation_participants_rotation_user"
        ),
        sa.UniqueConstraint(
            "rotation_id",
            "position",
            name="uq_rotation_participants_rotation_position",
            deferrable=True,
            initially="DEFERRED",
        ),
    )
    op.create_index(
        "ix_schedule_rotation_participants_rotation_id",
        "schedule_rotation_participants",
        ["rotation_id"],
    )

    op.create_table(
        "schedule_overrides",
        _uuid_pk(),
        _fk("schedule_id", "schedules.id", nullable=False),
        _fk("user_id", "users.id", nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.CheckConstraint("end_time > start_time", name="ck_override_end_after_start"),
    )
    op.create_index(
        "ix_schedule_overrides_schedule_window",
        "schedule_overrides",
        ["schedule_id", "start_time", "end_time"],
    )

    op.create_table(
        "escalation_policies",
        _uuid_pk(),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "repeat_enabled", sa.Boolean(), nullable=False, server_default="false"
        ),
        sa.Column("repeat_count", sa.Integer(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_escalation_policies_organization_id",
        "escalation_policies",
        ["organization_id"],
    )

    op.create_table(
        "escalation_rules",
        _uuid_pk(),
        _fk("policy_id", "escalation_policies.id", nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("escalation_delay", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(
            "policy_id", "position", name="uq_escalation_rules_position"
        ),
        sa.CheckConstraint("escalation_delay >= 0", name="ck_escalation_delay_nonneg"),
    )
    op.create_index("ix_escalation_rules_policy_id", "escalation_rules", ["policy_id"])

    op.create_table(
        "escalation_targets",
        _uuid_pk(),
        _fk("rule_id", "escalation_rules.id", nullable=False),
        sa.Column("target_type", enums["escalationtargettype"], nullable=False),
        sa.Column("target_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("notification_channels", postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_escalation_targets_rule_id", "escalation_targets", ["rule_id"])

    op.create_table(
        "alerts",
        _uuid_pk(),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source", sa.String(100), nullable=False),
        sa.Column("source_id", sa.String(255), nullable=True),
        sa.Column(
            "priority", enums["alertpriority"], nullable=False, server_default="P3"
        ),
        sa.Column(
            "status", enums["alertstatus"], nullable=False, server_default="open"
        ),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "tags",
            postgresql.ARRAY(sa.String()),
            nullable=False,
            server_default="{}",
        ),
        sa.Column(
            "custom_fields",
            postgresql.JSONB(),
            nullable=False,
            server_default="{}",
        ),
        _fk("assigned_to_user_id", "users.id", ondelete="SET NULL", nullable=True),
        _fk("assigned_to_team_id", "teams.id", ondelete="SET NULL", nullable=True),
        _fk(
            "escalation_policy_id",
            "escalation_policies.id",
            ondelete="SET NULL",
            nullable=True,
        ),
        sa.Column(
            "escalation_level", sa.Integer(), nullable=False, server_default="-1"
        ),
        sa.Column(
            "escalation_repeat_count", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("escalation_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "escalation_completed_at", sa.DateTime(timezone=True), nullable=True
        ),
        sa.Column("acknowledged_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("close_reason", sa.Text(), nullable=True),
        sa.Column("snoozed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("snoozed_until", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_alerts_organization_id", "alerts", ["organization_id"])
    op.create_index(
        "ix_alerts_escalation_candidates",
        "alerts",
        ["status", "escalation_policy_id"],
        postgresql_where=sa.text(
            "escalation_policy_id IS NOT NULL AND escalation_completed_at IS NULL"
        ),
    )

    op.create_table(
        "alert_routing_rules",
        _uuid_pk(),
        sa.Column("organization_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column(
            "conditions", postgresql.JSONB(), nullable=False, server_default="{}"
        ),
        sa.Column("actions", postgresql.JSONB(), nullable=False, server_default="{}"),
        *_timestamps(),
        sa.UniqueConstraint(
            "organization_id", "priority", name="uq_routing_rules_org_priority"
        ),
    )
    op.create_index(
        "ix_alert_routing_rules_organization_id",
        "alert_routing_rules",
        ["organization_id"],
    )

    op.create_table(
        "user_dnd_settings",
        _uuid_pk(),
        _fk("user_id", "users.id", nullable=False, unique=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column(
            "allow_p1_override", sa.Boolean(), nullable=False, server_default="true"
        ),
        sa.Column("schedule", postgresql.JSONB(), nullable=True),
        sa.Column("overrides", postgresql.JSONB(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "user_notification_channels",
        _uuid_pk(),
        _fk("user_id", "users.id", nullable=False),
        sa.Column("channel", enums["channeltype"], nullable=False),
        sa.Column("address", sa.String(512), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("min_priority", enums["alertpriority"], nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_user_notification_channels_user_id",
        "user_notification_channels",
        ["user_id"],
    )

    op.create_table(
        "notification_logs",
        _uuid_pk(),
        _fk("alert_id", "alerts.id", nullable=False),
        _fk("user_id", "users.id", nullable=False),
        sa.Column("channel", enums["channeltype"], nullable=True),
        sa.Column("escalation_level", sa.Integer(), nullable=False),
        sa.Column("status", enums["notificationlogstatus"], nullable=False),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_notification_logs_alert_id", "notification_logs", ["alert_id"])
    op.create_index("ix_notification_logs_user_id", "notification_logs", ["user_id"])

    op.create_table(
        "escalation_events",
        _uuid_pk(),
        _fk("alert_id", "alerts.id", nullable=False),
        _fk(
            "policy_id", "escalation_policies.id", ondelete="SET NULL", nullable=True
        ),
        _fk("rule_id", "escalation_rules.id", ondelete="SET NULL", nullable=True),
        sa.Column("event_type", enums["escalationeventtype"], nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("repeat_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "recipients_notified",
            postgresql.JSONB(),
            nullable=False,
            server_default="[]",
        ),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column(
            "triggered_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_escalation_events_alert_id", "escalation_events", ["alert_id"])


def downgrade() -> None:
    for table in (
        "escalation_events",
        "notification_logs",
        "user_notification_channels",
        "user_dnd_settings",
        "alert_routing_rules",
        "alerts",
        "escalation_targets",
        "escalation_rules",
        "escalation_policies",
        "schedule_overrides",
        "schedule_rotation_participants",
        "schedule_rotations",
        "schedules",
        "team_members",
        "teams",
        "users",
    ):
        op.drop_table(table)

    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(op.get_bind(), checkfirst=True)
