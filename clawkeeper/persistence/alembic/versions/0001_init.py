"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, server_default=""),
        sa.Column("plan", sa.String(), nullable=False, server_default="free"),
        sa.Column("credits_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_monthly_cap", sa.Integer(), nullable=True),
        sa.Column(
            "credits_last_refill_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        # Compare-and-swap guard for concurrent ledger writes.
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("credits_balance >= 0", name="ck_organizations_credits_balance_nonneg"),
    )

    op.create_table(
        "org_members",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("role", sa.String(), nullable=False, server_default="member"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("org_id", "user_id", name="uq_org_members_org_user"),
    )
    op.create_index("ix_org_members_org_id", "org_members", ["org_id"])
    op.create_index("ix_org_members_org_role", "org_members", ["org_id", "role"])

    op.create_table(
        "notification_settings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False, unique=True),
        sa.Column("email_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("email_address", sa.String(), nullable=True),
        sa.Column("webhook_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("webhook_url", sa.String(), nullable=True),
        sa.Column("webhook_secret", sa.String(), nullable=True),
        sa.Column("notify_on_cve", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("notify_on_critical", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("notify_on_grade_drop", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("notify_on_new_host", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("notify_on_shield_block", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "hosts",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("hostname", sa.String(), nullable=False),
        sa.Column("platform", sa.String(), nullable=True),
        sa.Column("os_version", sa.String(), nullable=True),
        sa.Column("agent_version", sa.String(), nullable=True),
        sa.Column("last_grade", sa.String(), nullable=True),
        sa.Column("last_score", sa.Float(), nullable=True),
        sa.Column("last_scan_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        # Concurrent first sightings collide here; the loser retries as an update.
        sa.UniqueConstraint("org_id", "hostname", name="uq_hosts_org_hostname"),
    )
    op.create_index("ix_hosts_org_id", "hosts", ["org_id"])

    op.create_table(
        "scans",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("host_id", sa.String(), sa.ForeignKey("hosts.id"), nullable=False),
        sa.Column("org_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("grade", sa.String(length=1), nullable=False),
        sa.Column("passed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("fixed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("raw_report", sa.Text(), nullable=False, server_default=""),
        sa.Column("scanned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_scans_host_id", "scans", ["host_id"])
    op.create_index("ix_scans_org_id", "scans", ["org_id"])
    op.create_index("ix_scans_host_scanned_at", "scans", ["host_id", "scanned_at"])

    op.create_table(
        "scan_checks",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("scan_id", sa.String(), sa.ForeignKey("scans.id"), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("check_name", sa.String(), nullable=False),
        sa.Column("detail", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_scan_checks_scan_id", "scan_checks", ["scan_id"])

    op.create_table(
        "alert_rules",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("rule_type", sa.String(), nullable=False),
        sa.Column("config_json", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_alert_rules_org_id", "alert_rules", ["org_id"])
    op.create_index("ix_alert_rules_org_enabled", "alert_rules", ["org_id", "enabled"])

    op.create_table(
        "alert_events",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column(
            "alert_rule_id",
            sa.String(),
            sa.ForeignKey("alert_rules.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("host_id", sa.String(), sa.ForeignKey("hosts.id"), nullable=True),
        sa.Column("scan_id", sa.String(), sa.ForeignKey("scans.id"), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("notified_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_alert_events_org_id", "alert_events", ["org_id"])
    # Backs the per-rule sliding-window rate limit lookup.
    op.create_index(
        "ix_alert_events_rule_notified_at", "alert_events", ["alert_rule_id", "notified_at"]
    )

    op.create_table(
        "events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("org_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("host_id", sa.String(), sa.ForeignKey("hosts.id"), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("detail_json", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("actor", sa.String(), nullable=False, server_default="system"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_events_host_id", "events", ["host_id"])
    op.create_index("ix_events_org_created_at", "events", ["org_id", "created_at"])
    op.create_index("ix_events_org_type", "events", ["org_id", "event_type"])

    op.create_table(
        "insights",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("org_id", sa.String(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("insight_type", sa.String(), nullable=False),
        sa.Column("dedupe_key", sa.String(), nullable=False, server_default=""),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("remediation", sa.Text(), nullable=False, server_default=""),
        sa.Column("affected_hosts_json", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("is_resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scan_id", sa.String(), sa.ForeignKey("scans.id"), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_insights_org_type_resolved", "insights", ["org_id", "insight_type", "is_resolved"]
    )
    op.create_index(
        "uq_insights_open_dedupe",
        "insights",
        ["org_id", "insight_type", "dedupe_key"],
        unique=True,
        postgresql_where=sa.text("NOT is_resolved"),
    )


def downgrade() -> None:
    op.drop_index("uq_insights_open_dedupe", table_name="insights")
    op.drop_index("ix_insights_org_type_resolved", table_name="insights")
    op.drop_table("insights")
    op.drop_index("ix_events_org_type", table_name="events")
    op.drop_index("ix_events_org_created_at", table_name="events")
    op.drop_index("ix_events_host_id", table_name="events")
    op.drop_table("events")
    op.drop_index("ix_alert_events_rule_notified_at", table_name="alert_events")
    op.drop_index("ix_alert_events_org_id", table_name="alert_events")
    op.drop_table("alert_events")
    op.drop_index("ix_alert_rules_org_enabled", table_name="alert_rules")
    op.drop_index("ix_alert_rules_org_id", table_name="alert_rules")
    op.drop_table("alert_rules")
    op.drop_index("ix_scan_checks_scan_id", table_name="scan_checks")
    op.drop_table("scan_checks")
    op.drop_index("ix_scans_host_scanned_at", table_name="scans")
    op.drop_index("ix_scans_org_id", table_name="scans")
    op.drop_index("ix_scans_host_id", table_name="scans")
    op.drop_table("scans")
    op.drop_index("ix_hosts_org_id", table_name="hosts")
    op.drop_table("hosts")
    op.drop_table("notification_settings")
    op.drop_index("ix_org_members_org_role", table_name="org_members")
    op.drop_index("ix_org_members_org_id", table_name="org_members")
    op.drop_table("org_members")
    op.drop_table("organizations")
