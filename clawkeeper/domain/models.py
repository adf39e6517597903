from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres and plain JSON elsewhere so tests can run against SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return uuid4().hex


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"
    __table_args__ = (
        CheckConstraint("credits_balance >= 0", name="ck_organizations_credits_balance_nonneg"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, default="")
    # One of free|pro|enterprise; limits are resolved from the static plan table.
    plan: Mapped[str] = mapped_column(String, default="free", nullable=False)
    credits_balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    credits_monthly_cap: Mapped[int | None] = mapped_column(Integer, nullable=True)
    credits_last_refill_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, nullable=False
    )
    # Bumped on every ledger write; compare-and-swap guard for concurrent deductions.
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class OrgMember(Base):
    __tablename__ = "org_members"
    __table_args__ = (
        UniqueConstraint("org_id", "user_id", name="uq_org_members_org_user"),
        Index("ix_org_members_org_role", "org_id", "role"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    user_id: Mapped[str] = mapped_column(String)
    # Denormalized from the identity provider so alert mail needs no auth lookup.
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String, default="member")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class NotificationSettings(Base):
    __tablename__ = "notification_settings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), unique=True)
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    email_address: Mapped[str | None] = mapped_column(String, nullable=True)
    webhook_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    webhook_url: Mapped[str | None] = mapped_column(String, nullable=True)
    # Shared secret for X-Signature; deliveries go unsigned when empty.
    webhook_secret: Mapped[str | None] = mapped_column(String, nullable=True)
    notify_on_cve: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notify_on_critical: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notify_on_grade_drop: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notify_on_new_host: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notify_on_shield_block: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class Host(Base):
    __tablename__ = "hosts"
    __table_args__ = (UniqueConstraint("org_id", "hostname", name="uq_hosts_org_hostname"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    hostname: Mapped[str] = mapped_column(String)
    # Last-scan summary, overwritten on every ingested scan (last write wins).
    platform: Mapped[str | None] = mapped_column(String, nullable=True)
    os_version: Mapped[str | None] = mapped_column(String, nullable=True)
    agent_version: Mapped[str | None] = mapped_column(String, nullable=True)
    last_grade: Mapped[str | None] = mapped_column(String, nullable=True)
    last_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_scan_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class Scan(Base):
    __tablename__ = "scans"
    __table_args__ = (Index("ix_scans_host_scanned_at", "host_id", "scanned_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    host_id: Mapped[str] = mapped_column(String, ForeignKey("hosts.id"), index=True)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    score: Mapped[float] = mapped_column(Float)
    grade: Mapped[str] = mapped_column(String(1))
    passed: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    fixed: Mapped[int] = mapped_column(Integer, default=0)
    skipped: Mapped[int] = mapped_column(Integer, default=0)
    raw_report: Mapped[str] = mapped_column(Text, default="")
    # Agent-reported scan time; orders a host's scan history.
    scanned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class ScanCheck(Base):
    __tablename__ = "scan_checks"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    scan_id: Mapped[str] = mapped_column(String, ForeignKey("scans.id"), index=True)
    status: Mapped[str] = mapped_column(String)
    check_name: Mapped[str] = mapped_column(String)
    detail: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class AlertRule(Base):
    __tablename__ = "alert_rules"
    __table_args__ = (Index("ix_alert_rules_org_enabled", "org_id", "enabled"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    # grade_drop | score_below | check_fail
    rule_type: Mapped[str] = mapped_column(String)
    config_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Claimed with a conditional UPDATE so one firing wins per rate-limit window.
    last_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )


class AlertEvent(Base):
    __tablename__ = "alert_events"
    __table_args__ = (Index("ix_alert_events_rule_notified_at", "alert_rule_id", "notified_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"), index=True)
    alert_rule_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("alert_rules.id", ondelete="SET NULL"), nullable=True
    )
    host_id: Mapped[str | None] = mapped_column(String, ForeignKey("hosts.id"), nullable=True)
    scan_id: Mapped[str | None] = mapped_column(String, ForeignKey("scans.id"), nullable=True)
    message: Mapped[str] = mapped_column(Text)
    # Rate-limit window marker for the owning rule.
    notified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        Index("ix_events_org_created_at", "org_id", "created_at"),
        Index("ix_events_org_type", "org_id", "event_type"),
    )

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"))
    host_id: Mapped[str | None] = mapped_column(String, ForeignKey("hosts.id"), nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    detail_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    # agent | system
    actor: Mapped[str] = mapped_column(String, default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Insight(Base):
    __tablename__ = "insights"
    __table_args__ = (
        Index("ix_insights_org_type_resolved", "org_id", "insight_type", "is_resolved"),
        # At most one open insight per (org, type, check).
        Index(
            "uq_insights_open_dedupe",
            "org_id",
            "insight_type",
            "dedupe_key",
            unique=True,
            postgresql_where=text("NOT is_resolved"),
            sqlite_where=text("NOT is_resolved"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    org_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id"))
    insight_type: Mapped[str] = mapped_column(String)
    # Check name for check-scoped types, empty otherwise.
    dedupe_key: Mapped[str] = mapped_column(String, default="", nullable=False)
    severity: Mapped[str] = mapped_column(String)
    category: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="")
    remediation: Mapped[str] = mapped_column(Text, default="")
    # [{host_id, hostname, detail}] merged by host_id on upsert.
    affected_hosts_json: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    is_resolved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    scan_id: Mapped[str | None] = mapped_column(String, ForeignKey("scans.id"), nullable=True)
    # Compare-and-swap guard for concurrent host merges and resolutions.
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )
