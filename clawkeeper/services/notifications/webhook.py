from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
from typing import Any

import httpx

from clawkeeper.core.config import get_settings


logger = logging.getLogger(__name__)


class WebhookDeliveryError(Exception):
    """Webhook endpoint answered outside 2xx."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"Webhook responded with status {status_code}")
        self.status_code = status_code


def build_signature(secret: str, body: bytes) -> str:
    # HMAC-SHA256 over the exact bytes sent, rendered as the X-Signature header value.
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_webhook_body(
    *,
    event: str,
    severity: str,
    title: str,
    description: str,
    remediation: str,
    hostname: str,
    metadata: dict[str, Any] | None,
    timestamp: datetime | None = None,
) -> bytes:
    sent_at = timestamp or datetime.now(timezone.utc)
    payload = {
        "event": event,
        "severity": severity,
        "title": title,
        "description": description,
        "remediation": remediation,
        "hostname": hostname,
        "metadata": metadata or {},
        "timestamp": sent_at.isoformat().replace("+00:00", "Z"),
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


async def post_webhook(
    *,
    url: str,
    secret: str | None,
    body: bytes,
    transport: httpx.AsyncBaseTransport | None = None,
) -> int:
    """Deliver one signed webhook body.

    Exactly one attempt within the configured timeout. Raises on transport
    errors, timeouts and non-2xx responses; callers own the error boundary.
    """
    settings = get_settings()
    headers = {
        "Content-Type": "application/json",
        "User-Agent": settings.webhook_user_agent,
    }
    if secret:
        headers["X-Signature"] = build_signature(secret, body)
    timeout = settings.webhook_timeout_ms / 1000.0
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        response = await client.post(url, content=body, headers=headers)
    if not response.is_success:
        raise WebhookDeliveryError(response.status_code)
    return response.status_code
