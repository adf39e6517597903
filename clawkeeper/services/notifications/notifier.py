from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Awaitable

from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.domain.models import NotificationSettings
from clawkeeper.persistence.repos.organizations import get_notification_settings
from clawkeeper.services.notifications.email import (
    render_alert_email,
    render_insight_email,
    send_email,
)
from clawkeeper.services.notifications.webhook import build_webhook_body, post_webhook


logger = logging.getLogger(__name__)

_CRITICAL_TYPES = frozenset({"critical_failure", "credential_exposure", "new_regression"})
_URGENT_SEVERITIES = frozenset({"critical", "high"})


@dataclass(frozen=True)
class NotificationPayload:
    # type is one of cve_vulnerability|critical_failure|credential_exposure|
    # grade_degradation|new_regression|new_host|shield_block|alert.
    type: str
    severity: str
    title: str
    description: str
    remediation: str
    hostname: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AlertNotification:
    rule_id: str
    rule_name: str
    rule_type: str
    hostname: str
    message: str
    scan_id: str
    grade: str | None = None
    score: float | None = None


@dataclass(frozen=True)
class ChannelResult:
    attempted: bool = False
    delivered: bool = False
    error: str | None = None


@dataclass(frozen=True)
class NotificationResult:
    email: ChannelResult = field(default_factory=ChannelResult)
    webhook: ChannelResult = field(default_factory=ChannelResult)

    @property
    def delivered(self) -> bool:
        return self.email.delivered or self.webhook.delivered


def should_notify(settings: NotificationSettings, payload: NotificationPayload) -> bool:
    # Per-org type filters; critical covers the failure-style insights at high severity or above.
    if payload.type == "cve_vulnerability":
        return bool(settings.notify_on_cve)
    if payload.type == "grade_degradation":
        return bool(settings.notify_on_grade_drop)
    if payload.type == "new_host":
        return bool(settings.notify_on_new_host)
    if payload.type == "shield_block":
        return bool(settings.notify_on_shield_block)
    if payload.type in _CRITICAL_TYPES:
        return bool(settings.notify_on_critical) and payload.severity in _URGENT_SEVERITIES
    return False


async def notify(
    *,
    session: AsyncSession,
    org_id: str,
    payload: NotificationPayload,
) -> NotificationResult:
    """Fan an insight-style notification out to the org's configured channels.

    Email and webhook are attempted concurrently and independently; a failure
    in one never stops the other. Never raises.
    """
    try:
        settings = await get_notification_settings(session, org_id)
    except Exception as exc:  # noqa: BLE001 - notification is best-effort
        logger.warning("notification_settings_load_failed org_id=%s", org_id, exc_info=exc)
        return NotificationResult()
    if settings is None or not should_notify(settings, payload):
        return NotificationResult()

    email = None
    if settings.email_enabled and settings.email_address:
        email = render_insight_email(
            title=payload.title,
            severity=payload.severity,
            description=payload.description,
            remediation=payload.remediation,
            affected_hosts=[payload.hostname],
        )
    body = None
    if settings.webhook_enabled and settings.webhook_url:
        body = _payload_body(payload)

    email_call = None
    if email is not None:
        subject, html = email
        email_call = send_email(to=settings.email_address, subject=subject, html=html)
    webhook_call = None
    if body is not None:
        webhook_call = post_webhook(url=settings.webhook_url, secret=settings.webhook_secret, body=body)

    return await _fan_out(org_id, payload.type, email_call, webhook_call)


async def notify_alert(
    *,
    session: AsyncSession,
    org_id: str,
    owner_email: str | None,
    alert: AlertNotification,
) -> NotificationResult:
    # Alert-rule notifications bypass the type filters: the rule itself is the opt-in.
    try:
        settings = await get_notification_settings(session, org_id)
    except Exception as exc:  # noqa: BLE001 - notification is best-effort
        logger.warning("notification_settings_load_failed org_id=%s", org_id, exc_info=exc)
        settings = None

    # Render everything before creating coroutines so none is left unawaited on error.
    email = None
    if owner_email:
        email = render_alert_email(
            hostname=alert.hostname,
            rule_name=alert.rule_name,
            message=alert.message,
            grade=alert.grade,
            score=alert.score,
        )

    body = None
    if settings is not None and settings.webhook_enabled and settings.webhook_url:
        body = build_webhook_body(
            event="alert",
            severity="high",
            title=f"Alert: {alert.rule_name}",
            description=alert.message,
            remediation="",
            hostname=alert.hostname,
            metadata={
                "rule_id": alert.rule_id,
                "rule_type": alert.rule_type,
                "scan_id": alert.scan_id,
                "grade": alert.grade,
                "score": alert.score,
            },
        )

    email_call = None
    if email is not None:
        subject, html = email
        email_call = send_email(to=owner_email, subject=subject, html=html)
    webhook_call = None
    if body is not None:
        webhook_call = post_webhook(
            url=settings.webhook_url,
            secret=settings.webhook_secret,
            body=body,
        )

    return await _fan_out(org_id, "alert", email_call, webhook_call)


def _payload_body(payload: NotificationPayload) -> bytes:
    return build_webhook_body(
        event=payload.type,
        severity=payload.severity,
        title=payload.title,
        description=payload.description,
        remediation=payload.remediation,
        hostname=payload.hostname,
        metadata=payload.metadata,
    )


async def _fan_out(
    org_id: str,
    kind: str,
    email_call: Awaitable[Any] | None,
    webhook_call: Awaitable[Any] | None,
) -> NotificationResult:
    email_result, webhook_result = await asyncio.gather(
        _deliver("email", org_id, kind, email_call),
        _deliver("webhook", org_id, kind, webhook_call),
    )
    return NotificationResult(email=email_result, webhook=webhook_result)


async def _deliver(
    channel: str,
    org_id: str,
    kind: str,
    call: Awaitable[Any] | None,
) -> ChannelResult:
    # Per-channel error boundary.
    if call is None:
        return ChannelResult()
    try:
        sent = await call
    except Exception as exc:  # noqa: BLE001 - channel failures are logged, never raised
        logger.warning(
            "%s_delivery_failed org_id=%s kind=%s", channel, org_id, kind, exc_info=exc
        )
        return ChannelResult(attempted=True, delivered=False, error=str(exc) or type(exc).__name__)
    # send_email returns False when skipped for configuration reasons.
    delivered = sent is not False
    return ChannelResult(attempted=True, delivered=delivered)
