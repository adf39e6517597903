from __future__ import annotations

from html import escape
import logging
from typing import Iterable

import httpx

from clawkeeper.core.config import get_settings


logger = logging.getLogger(__name__)

_SEVERITY_COLORS = {
    "critical": "#dc2626",
    "high": "#ea580c",
    "medium": "#ca8a04",
    "low": "#2563eb",
    "info": "#6b7280",
}


class EmailDeliveryError(Exception):
    """Transactional email API rejected the message."""


def render_alert_email(
    *,
    hostname: str,
    rule_name: str,
    message: str,
    grade: str | None = None,
    score: float | None = None,
) -> tuple[str, str]:
    # Every interpolated value is user-controlled and must be escaped.
    app_url = get_settings().app_url
    safe_host = escape(hostname)
    safe_rule = escape(rule_name)
    grade_line = ""
    if grade:
        score_text = f" ({_format_score(score)}/100)" if score is not None else ""
        grade_line = f"<p><strong>Grade:</strong> {escape(grade)}{score_text}</p>"
    subject = f"[Clawkeeper] Alert: {rule_name} - {hostname}"
    html = (
        '<div style="font-family: sans-serif; max-width: 600px;">'
        '<h2 style="color: #e11d48;">Clawkeeper Alert</h2>'
        f"<p><strong>Host:</strong> {safe_host}</p>"
        f"<p><strong>Rule:</strong> {safe_rule}</p>"
        f"{grade_line}"
        f"<p>{escape(message)}</p>"
        '<hr style="border: none; border-top: 1px solid #e5e7eb; margin: 24px 0;" />'
        '<p style="color: #6b7280; font-size: 14px;">'
        f'<a href="{escape(app_url)}/alerts">View alerts</a> &middot; '
        f'<a href="{escape(app_url)}/settings">Manage rules</a>'
        "</p></div>"
    )
    return subject, html


def render_insight_email(
    *,
    title: str,
    severity: str,
    description: str,
    remediation: str,
    affected_hosts: Iterable[str],
) -> tuple[str, str]:
    app_url = get_settings().app_url
    color = _SEVERITY_COLORS.get(severity, _SEVERITY_COLORS["info"])
    hosts = "".join(f"<li>{escape(host)}</li>" for host in affected_hosts)
    subject = f"[Clawkeeper] {severity.upper()}: {title}"
    html = (
        '<div style="font-family: sans-serif; max-width: 600px;">'
        f'<h2 style="color: {color};">{escape(title)}</h2>'
        f"<p><strong>Severity:</strong> {escape(severity)}</p>"
        f"<p>{escape(description)}</p>"
        f"<p><strong>Remediation:</strong> {escape(remediation)}</p>"
        f"<p><strong>Affected hosts:</strong></p><ul>{hosts}</ul>"
        '<hr style="border: none; border-top: 1px solid #e5e7eb; margin: 24px 0;" />'
        '<p style="color: #6b7280; font-size: 14px;">'
        f'<a href="{escape(app_url)}/insights">View insights</a>'
        "</p></div>"
    )
    return subject, html


async def send_email(
    *,
    to: str,
    subject: str,
    html: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """Send one message through the Resend API.

    Returns False without sending when email is disabled or unconfigured.
    Raises on transport errors and non-2xx responses.
    """
    settings = get_settings()
    if not settings.email_enabled:
        return False
    if not settings.resend_api_key:
        logger.warning("email_skipped reason=missing_api_key to=%s", to)
        return False
    headers = {"Authorization": f"Bearer {settings.resend_api_key}"}
    payload = {"from": settings.email_from, "to": [to], "subject": subject, "html": html}
    timeout = settings.email_timeout_ms / 1000.0
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        response = await client.post(settings.resend_api_url, json=payload, headers=headers)
    if not response.is_success:
        raise EmailDeliveryError(f"Email API responded with status {response.status_code}")
    return True


def _format_score(score: float) -> str:
    return str(int(score)) if float(score).is_integer() else f"{score:g}"
