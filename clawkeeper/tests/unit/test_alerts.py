from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from clawkeeper.domain.models import AlertEvent, AlertRule
from clawkeeper.domain.scans import CheckResult, ScanPayload
from clawkeeper.persistence.db import SessionLocal
from clawkeeper.services import alerts as alerts_module
from clawkeeper.services.alerts import evaluate_alerts
from clawkeeper.services.notifications import NotificationResult
from clawkeeper.tests.utils.factories import seed_host, seed_org, seed_rule, seed_scan


pytestmark = pytest.mark.usefixtures("fresh_schema")

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _payload(score: float = 80, grade: str = "B", checks: dict[str, str] | None = None) -> ScanPayload:
    return ScanPayload(
        hostname="web-1",
        platform="linux",
        score=score,
        grade=grade,
        scanned_at=T0,
        checks=tuple(
            CheckResult(status=s, check_name=n, detail="off") for n, s in (checks or {}).items()
        ),
    )


@pytest.fixture
def sent_alerts(monkeypatch) -> list[dict]:
    # Capture notifier calls instead of reaching email/webhook endpoints.
    calls: list[dict] = []

    async def _notify_alert(*, session, org_id, owner_email, alert):
        calls.append({"org_id": org_id, "owner_email": owner_email, "alert": alert})
        return NotificationResult()

    monkeypatch.setattr(alerts_module, "notify_alert", _notify_alert)
    return calls


async def _alert_count(rule_id: str) -> int:
    async with SessionLocal() as session:
        count = await session.scalar(
            select(func.count()).select_from(AlertEvent).where(AlertEvent.alert_rule_id == rule_id)
        )
    return int(count or 0)


async def _setup(owner_email: str | None = "owner@example.com") -> tuple[str, str, str]:
    org_id = await seed_org(owner_email=owner_email)
    host_id = await seed_host(org_id, "web-1")
    scan_id = await seed_scan(org_id=org_id, host_id=host_id, scanned_at=T0)
    return org_id, host_id, scan_id


@pytest.mark.asyncio
async def test_score_below_fires_then_rate_limits(sent_alerts) -> None:
    org_id, host_id, scan_id = await _setup()
    rule_id = await seed_rule(org_id, "score_below", {"threshold": 70})

    fired = await evaluate_alerts(
        org_id=org_id, host_id=host_id, scan_id=scan_id, payload=_payload(score=65), now=lambda: T0
    )
    assert len(fired) == 1
    assert fired[0].message == "Score 65 is below threshold 70 on web-1"
    assert sent_alerts[0]["owner_email"] == "owner@example.com"

    # A second qualifying scan inside the hour is a silent no-op.
    again = await evaluate_alerts(
        org_id=org_id,
        host_id=host_id,
        scan_id=scan_id,
        payload=_payload(score=60),
        now=lambda: T0 + timedelta(minutes=30),
    )
    assert again == []
    assert await _alert_count(rule_id) == 1
    assert len(sent_alerts) == 1

    # Once the window has passed the rule can fire again.
    later = await evaluate_alerts(
        org_id=org_id,
        host_id=host_id,
        scan_id=scan_id,
        payload=_payload(score=60),
        now=lambda: T0 + timedelta(minutes=61),
    )
    assert len(later) == 1
    assert await _alert_count(rule_id) == 2


@pytest.mark.asyncio
async def test_score_above_threshold_does_not_fire(sent_alerts) -> None:
    org_id, host_id, scan_id = await _setup()
    rule_id = await seed_rule(org_id, "score_below", {"threshold": 70})
    fired = await evaluate_alerts(
        org_id=org_id, host_id=host_id, scan_id=scan_id, payload=_payload(score=75), now=lambda: T0
    )
    assert fired == []
    assert await _alert_count(rule_id) == 0


@pytest.mark.asyncio
async def test_grade_drop_uses_prior_scan(sent_alerts) -> None:
    org_id = await seed_org(owner_email="owner@example.com")
    host_id = await seed_host(org_id, "web-1")
    await seed_scan(org_id=org_id, host_id=host_id, grade="B", scanned_at=T0 - timedelta(days=1))
    scan_id = await seed_scan(org_id=org_id, host_id=host_id, grade="D", scanned_at=T0)
    await seed_rule(org_id, "grade_drop", {})

    fired = await evaluate_alerts(
        org_id=org_id, host_id=host_id, scan_id=scan_id, payload=_payload(grade="D"), now=lambda: T0
    )
    assert [event.message for event in fired] == ["Grade dropped from B to D on web-1"]


@pytest.mark.asyncio
async def test_rules_are_rate_limited_independently(sent_alerts) -> None:
    org_id, host_id, scan_id = await _setup()
    await seed_rule(org_id, "score_below", {"threshold": 70}, name="low score")
    await seed_rule(org_id, "check_fail", {"check_name": "filevault"}, name="filevault")
    payload = _payload(score=50, checks={"FileVault": "FAIL"})

    fired = await evaluate_alerts(
        org_id=org_id, host_id=host_id, scan_id=scan_id, payload=payload, now=lambda: T0
    )
    assert len(fired) == 2


@pytest.mark.asyncio
async def test_missing_owner_still_records_alert(sent_alerts) -> None:
    org_id, host_id, scan_id = await _setup(owner_email=None)
    rule_id = await seed_rule(org_id, "score_below", {"threshold": 90})
    await evaluate_alerts(
        org_id=org_id, host_id=host_id, scan_id=scan_id, payload=_payload(score=10), now=lambda: T0
    )
    assert await _alert_count(rule_id) == 1
    assert sent_alerts[0]["owner_email"] is None


@pytest.mark.asyncio
async def test_disabled_rules_are_ignored(sent_alerts) -> None:
    org_id, host_id, scan_id = await _setup()
    rule_id = await seed_rule(org_id, "score_below", {"threshold": 90})
    async with SessionLocal() as session:
        rule = await session.get(AlertRule, rule_id)
        rule.enabled = False
        await session.commit()
    fired = await evaluate_alerts(
        org_id=org_id, host_id=host_id, scan_id=scan_id, payload=_payload(score=10), now=lambda: T0
    )
    assert fired == []


@pytest.mark.asyncio
async def test_notifier_failure_does_not_propagate(monkeypatch) -> None:
    org_id, host_id, scan_id = await _setup()
    await seed_rule(org_id, "score_below", {"threshold": 90})

    async def _explode(**kwargs):
        raise RuntimeError("smtp down")

    monkeypatch.setattr(alerts_module, "notify_alert", _explode)
    fired = await evaluate_alerts(
        org_id=org_id, host_id=host_id, scan_id=scan_id, payload=_payload(score=10), now=lambda: T0
    )
    assert fired == []


@pytest.mark.asyncio
async def test_concurrent_scans_fire_rule_once_per_window(sent_alerts) -> None:
    org_id = await seed_org(owner_email="owner@example.com")
    rule_id = await seed_rule(org_id, "score_below", {"threshold": 70})
    targets = []
    for index in range(4):
        host_id = await seed_host(org_id, f"web-{index}")
        scan_id = await seed_scan(org_id=org_id, host_id=host_id, scanned_at=T0)
        targets.append((host_id, scan_id))

    results = await asyncio.gather(
        *(
            evaluate_alerts(
                org_id=org_id,
                host_id=host_id,
                scan_id=scan_id,
                payload=_payload(score=40),
                now=lambda: T0,
            )
            for host_id, scan_id in targets
        )
    )

    assert sum(len(fired) for fired in results) == 1
    assert await _alert_count(rule_id) == 1
    assert len(sent_alerts) == 1
    async with SessionLocal() as session:
        rule = await session.get(AlertRule, rule_id)
        assert rule.last_notified_at is not None
