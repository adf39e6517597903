from __future__ import annotations

import httpx
import pytest

from clawkeeper.persistence.db import SessionLocal
from clawkeeper.services.notifications import (
    AlertNotification,
    ChannelResult,
    NotificationPayload,
    notifier,
    notify,
    notify_alert,
)
from clawkeeper.services.notifications import webhook as webhook_module
from clawkeeper.tests.utils.factories import seed_notification_settings, seed_org


pytestmark = pytest.mark.usefixtures("fresh_schema")


def _insight_payload() -> NotificationPayload:
    return NotificationPayload(
        type="critical_failure",
        severity="critical",
        title="Privileged Mode Failed",
        description="container runs privileged",
        remediation="drop --privileged",
        hostname="web-1",
        metadata={"check_name": "Privileged Mode"},
    )


@pytest.fixture
def channels(monkeypatch) -> dict[str, list]:
    calls: dict[str, list] = {"email": [], "webhook": []}

    async def _send_email(*, to, subject, html):
        calls["email"].append({"to": to, "subject": subject})
        return True

    async def _post_webhook(*, url, secret, body):
        calls["webhook"].append({"url": url, "secret": secret, "body": body})
        return 200

    monkeypatch.setattr(notifier, "send_email", _send_email)
    monkeypatch.setattr(notifier, "post_webhook", _post_webhook)
    return calls


async def _both_channels() -> str:
    org_id = await seed_org()
    await seed_notification_settings(
        org_id,
        email_enabled=True,
        email_address="ops@example.com",
        webhook_enabled=True,
        webhook_url="https://hooks.example.com/in",
        webhook_secret="s3cret",
    )
    return org_id


@pytest.mark.asyncio
async def test_notify_fans_out_to_both_channels(channels) -> None:
    org_id = await _both_channels()
    async with SessionLocal() as session:
        result = await notify(session=session, org_id=org_id, payload=_insight_payload())

    assert result.email.delivered and result.webhook.delivered
    assert channels["email"][0]["to"] == "ops@example.com"
    assert channels["webhook"][0]["secret"] == "s3cret"
    assert b'"event":"critical_failure"' in channels["webhook"][0]["body"]


@pytest.mark.asyncio
async def test_webhook_failure_does_not_block_email(monkeypatch, channels) -> None:
    org_id = await _both_channels()

    async def _broken_webhook(*, url, secret, body):
        raise TimeoutError("webhook timed out")

    monkeypatch.setattr(notifier, "post_webhook", _broken_webhook)
    async with SessionLocal() as session:
        result = await notify(session=session, org_id=org_id, payload=_insight_payload())

    assert result.email.delivered
    assert result.webhook.attempted and not result.webhook.delivered
    assert result.webhook.error == "webhook timed out"
    assert len(channels["email"]) == 1


@pytest.mark.asyncio
async def test_email_failure_does_not_block_webhook(monkeypatch, channels) -> None:
    org_id = await _both_channels()

    async def _broken_email(*, to, subject, html):
        raise RuntimeError("mail api down")

    monkeypatch.setattr(notifier, "send_email", _broken_email)
    async with SessionLocal() as session:
        result = await notify(session=session, org_id=org_id, payload=_insight_payload())

    assert not result.email.delivered
    assert result.webhook.delivered
    assert result.delivered


@pytest.mark.asyncio
async def test_notify_without_settings_sends_nothing(channels) -> None:
    org_id = await seed_org()
    async with SessionLocal() as session:
        result = await notify(session=session, org_id=org_id, payload=_insight_payload())
    assert not result.email.attempted and not result.webhook.attempted
    assert channels == {"email": [], "webhook": []}


@pytest.mark.asyncio
async def test_filtered_type_is_not_sent(channels) -> None:
    org_id = await seed_org()
    await seed_notification_settings(
        org_id, email_enabled=True, email_address="ops@example.com", notify_on_critical=False
    )
    async with SessionLocal() as session:
        result = await notify(session=session, org_id=org_id, payload=_insight_payload())
    assert not result.delivered
    assert channels["email"] == []


def _alert() -> AlertNotification:
    return AlertNotification(
        rule_id="rule-1",
        rule_name="low score",
        rule_type="score_below",
        hostname="web-1",
        message="Score 65 is below threshold 70 on web-1",
        scan_id="scan-1",
        grade="C",
        score=65,
    )


@pytest.mark.asyncio
async def test_alert_goes_to_owner_and_webhook(channels) -> None:
    org_id = await _both_channels()
    alert = _alert()
    async with SessionLocal() as session:
        result = await notify_alert(
            session=session, org_id=org_id, owner_email="owner@example.com", alert=alert
        )

    assert result.email.delivered and result.webhook.delivered
    assert channels["email"][0]["to"] == "owner@example.com"
    assert b'"event":"alert"' in channels["webhook"][0]["body"]
    assert b'"severity":"high"' in channels["webhook"][0]["body"]


@pytest.mark.asyncio
async def test_alert_channels_built_after_settings_load(monkeypatch) -> None:
    org_id = await seed_org()
    order: list[str] = []

    async def _broken_settings(session, org_id):
        order.append("settings")
        raise RuntimeError("settings table unavailable")

    async def _deliver_email() -> bool:
        return True

    def _send_email(*, to, subject, html):
        order.append("email_built")
        return _deliver_email()

    monkeypatch.setattr(notifier, "get_notification_settings", _broken_settings)
    monkeypatch.setattr(notifier, "send_email", _send_email)

    async with SessionLocal() as session:
        result = await notify_alert(
            session=session, org_id=org_id, owner_email="owner@example.com", alert=_alert()
        )

    assert order == ["settings", "email_built"]
    # Owner email still goes out when the org's channel settings cannot be read.
    assert result.email.delivered
    assert not result.webhook.attempted


@pytest.mark.asyncio
async def test_webhook_timeout_reported_as_failed_attempt(monkeypatch, channels) -> None:
    org_id = await _both_channels()
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        raise httpx.ReadTimeout("timed out", request=request)

    async def _post_webhook(*, url, secret, body):
        return await webhook_module.post_webhook(
            url=url, secret=secret, body=body, transport=httpx.MockTransport(handler)
        )

    monkeypatch.setattr(notifier, "post_webhook", _post_webhook)
    async with SessionLocal() as session:
        result = await notify(session=session, org_id=org_id, payload=_insight_payload())

    assert attempts == 1
    assert result.webhook == ChannelResult(attempted=True, delivered=False, error="timed out")
    assert result.email.delivered
