"""initial schema: workspaces, threads, inbound events, automation, AI replies, usage, audit

Revision ID: 20261016_0001
Revises:
Create Date: 2026-10-16
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

revision = "20261016_0001"
down_revision = None
branch_labels = None
depends_on = None

_CHANNEL = sa.Enum("whatsapp", "messenger", "instagram", name="channel")
_TRIGGER = sa.Enum("new_message", "tag_added", "status_changed", "time_elapsed", name="triggertype")


def _timestamps(*, updated: bool = False) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()))
    return columns


def _workspace_fk() -> sa.Column:
    return sa.Column("workspace_id", UUID(as_uuid=True), sa.ForeignKey("workspaces.id"), nullable=False)


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    # ── Tenancy ─────────────────────────────────────────────────────────────
    if "workspaces" not in existing_tables:
        op.create_table(
            "workspaces",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            sa.Column("slug", sa.String(64), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            *_timestamps(),
        )

    if "workspace_members" not in existing_tables:
        op.create_table(
            "workspace_members",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _workspace_fk(),
            sa.Column("user_id", sa.String(64), nullable=False),
            sa.Column("role", sa.Enum("owner", "admin", "member", name="memberrole")),
            sa.Column("accepting_assignments", sa.Boolean, server_default=sa.true()),
            sa.Column("last_assigned_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint("workspace_id", "user_id", name="uq_workspace_member"),
        )

    if "channel_connections" not in existing_tables:
        op.create_table(
            "channel_connections",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _workspace_fk(),
            sa.Column("channel", _CHANNEL, nullable=False),
            sa.Column("external_account_id", sa.String(64), nullable=False),
            sa.Column("business_account_id", sa.String(64), nullable=True),
            sa.Column("access_token", sa.Text, nullable=True),
            sa.Column("active", sa.Boolean, server_default=sa.true()),
            *_timestamps(),
            sa.UniqueConstraint("channel", "external_account_id", name="uq_channel_connection_account"),
        )

    # ── Threads and inbound events ──────────────────────────────────────────
    if "threads" not in existing_tables:
        op.create_table(
            "threads",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _workspace_fk(),
            sa.Column("channel", _CHANNEL, nullable=False),
            sa.Column("external_id", sa.String(128), nullable=False),
            sa.Column("account_id", sa.String(64), nullable=True),
            sa.Column("contact_name", sa.String(255), nullable=True),
            sa.Column("status", sa.Enum("open", "pending", "solved", "spam", name="threadstatus")),
            sa.Column("priority", sa.Enum("urgent", "high", "med", "low", name="priority")),
            sa.Column("ai_enabled", sa.Boolean, server_default=sa.true()),
            sa.Column("unread_count", sa.Integer, server_default="0"),
            sa.Column("assigned_to", sa.String(64), nullable=True),
            sa.Column("last_customer_message_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("first_response_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("next_response_due_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("resolution_due_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("sla_status", sa.String(16), server_default="ok"),
            *_timestamps(updated=True),
            sa.UniqueConstraint("workspace_id", "channel", "external_id", name="uq_thread_external"),
        )
        op.create_index("ix_threads_workspace_status", "threads", ["workspace_id", "status"])

    if "thread_tags" not in existing_tables:
        op.create_table(
            "thread_tags",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _workspace_fk(),
            sa.Column("thread_id", UUID(as_uuid=True), sa.ForeignKey("threads.id"), nullable=False),
            sa.Column("tag", sa.String(64), nullable=False),
            *_timestamps(),
            sa.UniqueConstraint("thread_id", "tag", name="uq_thread_tag"),
        )

    if "inbound_events" not in existing_tables:
        op.create_table(
            "inbound_events",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _workspace_fk(),
            sa.Column("thread_id", UUID(as_uuid=True), sa.ForeignKey("threads.id"), nullable=True),
            sa.Column("provider", sa.String(32), nullable=False),
            sa.Column("channel", _CHANNEL, nullable=False),
            sa.Column("event_type", sa.Enum("message", "status", "postback", name="eventtype"), nullable=False),
            sa.Column("external_message_id", sa.String(255), nullable=False),
            sa.Column("dedup_key", sa.String(255), nullable=False),
            sa.Column("sender_id", sa.String(128), nullable=False),
            sa.Column("text", sa.Text, nullable=True),
            sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("raw_payload", sa.JSON),
            *_timestamps(),
            sa.UniqueConstraint("workspace_id", "dedup_key", name="uq_inbound_event_dedup"),
        )

    # ── Automation ──────────────────────────────────────────────────────────
    if "automation_rules" not in existing_tables:
        op.create_table(
            "automation_rules",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _workspace_fk(),
            sa.Column("name", sa.String(100), nullable=False),
            sa.Column("description", sa.Text, server_default=""),
            sa.Column("trigger_type", _TRIGGER, nullable=False),
            sa.Column("trigger_config", sa.JSON),
            sa.Column("conditions", sa.JSON),
            sa.Column("actions", sa.JSON),
            sa.Column("enabled", sa.Boolean, server_default=sa.true()),
            sa.Column("priority", sa.Integer, server_default="0"),
            sa.Column("execution_count", sa.Integer, server_default="0"),
            sa.Column("last_executed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_by", sa.String(64), nullable=True),
            *_timestamps(updated=True),
        )
        op.create_index(
            "ix_automation_rules_trigger", "automation_rules", ["workspace_id", "trigger_type", "enabled"]
        )

    if "automation_executions" not in existing_tables:
        op.create_table(
            "automation_executions",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _workspace_fk(),
            sa.Column("rule_id", UUID(as_uuid=True), sa.ForeignKey("automation_rules.id"), nullable=False),
            sa.Column("thread_id", UUID(as_uuid=True), sa.ForeignKey("threads.id"), nullable=False),
            sa.Column("trigger_type", _TRIGGER, nullable=False),
            sa.Column("trigger_key", sa.String(255), nullable=True),
            sa.Column(
                "status",
                sa.Enum("succeeded", "partial", "failed", "skipped", name="executionstatus"),
                nullable=False,
            ),
            sa.Column("actions_attempted", sa.Integer, server_default="0"),
            sa.Column("actions_succeeded", sa.Integer, server_default="0"),
            sa.Column("actions_skipped", sa.Integer, server_default="0"),
            sa.Column("error_message", sa.Text, nullable=True),
            sa.Column("duration_ms", sa.Integer, server_default="0"),
            *_timestamps(),
            sa.UniqueConstraint("rule_id", "thread_id", "trigger_key", name="uq_automation_execution_trigger"),
        )

    if "scheduled_actions" not in existing_tables:
        op.create_table(
            "scheduled_actions",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _workspace_fk(),
            sa.Column("thread_id", UUID(as_uuid=True), sa.ForeignKey("threads.id"), nullable=True),
            sa.Column("rule_id", UUID(as_uuid=True), sa.ForeignKey("automation_rules.id"), nullable=True),
            sa.Column("action_type", sa.String(64), nullable=False),
            sa.Column("payload", sa.JSON),
            sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column(
                "status",
                sa.Enum("pending", "executed", "cancelled", "failed", name="scheduledactionstatus"),
            ),
            sa.Column("attempt_count", sa.Integer, server_default="0"),
            sa.Column("max_attempts", sa.Integer, server_default="3"),
            sa.Column("last_error", sa.Text, nullable=True),
            sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(updated=True),
        )
        op.create_index("ix_scheduled_actions_due", "scheduled_actions", ["status", "run_at"])

    # ── AI auto-reply ───────────────────────────────────────────────────────
    if "ai_reply_settings" not in existing_tables:
        op.create_table(
            "ai_reply_settings",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            sa.Column("workspace_id", UUID(as_uuid=True), sa.ForeignKey("workspaces.id"), nullable=False, unique=True),
            sa.Column("enabled", sa.Boolean, server_default=sa.false()),
            sa.Column("provider_type", sa.Enum("OpenAI", "Anthropic", name="providertype")),
            sa.Column("model", sa.String(64), server_default="gpt-4o-mini"),
            sa.Column("temperature", sa.Float, server_default="0.7"),
            sa.Column("max_tokens", sa.Integer, server_default="500"),
            sa.Column("system_prompt", sa.Text, nullable=True),
            sa.Column("monthly_token_cap", sa.BigInteger, nullable=True),
            sa.Column("sandbox_enabled", sa.Boolean, server_default=sa.false()),
            sa.Column("sandbox_whitelist", sa.JSON),
            sa.Column("active_hours_enabled", sa.Boolean, server_default=sa.false()),
            sa.Column("active_hours_start", sa.String(5), nullable=True),
            sa.Column("active_hours_end", sa.String(5), nullable=True),
            sa.Column("active_timezone", sa.String(64), server_default="UTC"),
            sa.Column("cooldown_seconds", sa.Integer, server_default="5"),
            sa.Column("max_messages_per_thread", sa.Integer, nullable=True),
            sa.Column("handoff_keywords", sa.JSON),
            sa.Column("handoff_message", sa.Text, nullable=True),
            *_timestamps(updated=True),
        )

    if "ai_thread_states" not in existing_tables:
        op.create_table(
            "ai_thread_states",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _workspace_fk(),
            sa.Column("thread_id", UUID(as_uuid=True), sa.ForeignKey("threads.id"), nullable=False),
            sa.Column("handed_off", sa.Boolean, server_default=sa.false()),
            sa.Column("handed_off_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("handed_off_reason", sa.String(255), nullable=True),
            sa.Column("message_count", sa.Integer, server_default="0"),
            sa.Column("last_ai_reply_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("context_window", sa.JSON),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.UniqueConstraint("workspace_id", "thread_id", name="uq_ai_thread_state"),
        )

    if "ai_reply_logs" not in existing_tables:
        op.create_table(
            "ai_reply_logs",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _workspace_fk(),
            sa.Column("thread_id", UUID(as_uuid=True), sa.ForeignKey("threads.id"), nullable=False),
            sa.Column("external_message_id", sa.String(255), nullable=True),
            sa.Column(
                "status",
                sa.Enum("success", "failed", "handoff", "skipped", name="aireplystatus"),
                nullable=False,
            ),
            sa.Column("reason", sa.String(64), nullable=False),
            sa.Column("input_message", sa.Text, nullable=True),
            sa.Column("ai_response", sa.Text, nullable=True),
            sa.Column("provider", sa.String(64), nullable=True),
            sa.Column("model", sa.String(64), nullable=True),
            sa.Column("tokens_in", sa.Integer, server_default="0"),
            sa.Column("tokens_out", sa.Integer, server_default="0"),
            sa.Column("latency_ms", sa.Integer, nullable=True),
            sa.Column("error_message", sa.Text, nullable=True),
            *_timestamps(),
        )
        op.create_index("ix_ai_reply_logs_workspace_created", "ai_reply_logs", ["workspace_id", "created_at"])

    # ── Usage, audit, escalations, rate limits ──────────────────────────────
    if "usage_records" not in existing_tables:
        op.create_table(
            "usage_records",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _workspace_fk(),
            sa.Column("day", sa.Date, nullable=False),
            sa.Column("provider", sa.String(64), nullable=False),
            sa.Column("tokens_in", sa.BigInteger, server_default="0"),
            sa.Column("tokens_out", sa.BigInteger, server_default="0"),
            sa.Column("cost_usd", sa.Float, server_default="0"),
            sa.Column("requests", sa.Integer, server_default="0"),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.UniqueConstraint("workspace_id", "day", "provider", name="uq_usage_record_day"),
        )

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _workspace_fk(),
            sa.Column("actor", sa.String(64), server_default="system"),
            sa.Column("action", sa.String(64), nullable=False),
            sa.Column("target_type", sa.String(64), nullable=True),
            sa.Column("target_id", sa.String(64), nullable=True),
            sa.Column("detail", sa.JSON),
            *_timestamps(),
        )
        op.create_index("ix_audit_logs_workspace_created", "audit_logs", ["workspace_id", "created_at"])

    if "conversation_escalations" not in existing_tables:
        op.create_table(
            "conversation_escalations",
            sa.Column("id", UUID(as_uuid=True), primary_key=True),
            _workspace_fk(),
            sa.Column("thread_id", UUID(as_uuid=True), sa.ForeignKey("threads.id"), nullable=False),
            sa.Column("breach_type", sa.String(32), nullable=False),
            sa.Column("due_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("reason", sa.String(255), server_default=""),
            *_timestamps(),
            sa.UniqueConstraint("thread_id", "breach_type", "due_at", name="uq_escalation_breach"),
        )

    if "rate_limit_counters" not in existing_tables:
        op.create_table(
            "rate_limit_counters",
            sa.Column("key", sa.String(255), primary_key=True),
            sa.Column("count", sa.Integer, server_default="0"),
            sa.Column("reset_at", sa.DateTime(timezone=True), nullable=False),
        )


def downgrade() -> None:
    conn = op.get_bind()
    existing_tables = set(sa.inspect(conn).get_table_names())

    for table in (
        "rate_limit_counters",
        "conversation_escalations",
        "audit_logs",
        "usage_records",
        "ai_reply_logs",
        "ai_thread_states",
        "ai_reply_settings",
        "scheduled_actions",
        "automation_executions",
        "automation_rules",
        "inbound_events",
        "thread_tags",
        "threads",
        "channel_connections",
        "workspace_members",
        "workspaces",
    ):
        if table in existing_tables:
            op.drop_table(table)
