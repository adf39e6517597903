from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from clawkeeper.core.errors import AgentEventValidationError
from clawkeeper.domain.models import Event
from clawkeeper.domain.scans import CheckResult, ScanPayload
from clawkeeper.persistence.db import SessionLocal
from clawkeeper.services import events as events_module
from clawkeeper.services.events import generate_scan_events, record_agent_event
from clawkeeper.tests.utils.factories import seed_host, seed_org, seed_scan


pytestmark = pytest.mark.usefixtures("fresh_schema")

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _payload(grade: str, checks: dict[str, str], scanned_at: datetime) -> ScanPayload:
    return ScanPayload(
        hostname="mac-mini",
        platform="macos",
        score=70,
        grade=grade,
        scanned_at=scanned_at,
        checks=tuple(CheckResult(status=s, check_name=n) for n, s in checks.items()),
    )


async def _events(org_id: str) -> list[Event]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(Event).where(Event.org_id == org_id).order_by(Event.id.asc())
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_diff_against_latest_prior_scan() -> None:
    org_id = await seed_org()
    host_id = await seed_host(org_id)
    # The older scan must be ignored in favour of the most recent one.
    await seed_scan(org_id=org_id, host_id=host_id, grade="A", scanned_at=T0 - timedelta(days=2), checks={"Firewall": "FAIL"})
    await seed_scan(org_id=org_id, host_id=host_id, grade="B", scanned_at=T0 - timedelta(days=1), checks={"Firewall": "PASS"})
    new_payload = _payload("C", {"Firewall": "FAIL"}, T0)
    new_scan_id = await seed_scan(org_id=org_id, host_id=host_id, grade="C", scanned_at=T0, checks={"Firewall": "FAIL"})

    await generate_scan_events(
        org_id=org_id,
        host_id=host_id,
        scan_id=new_scan_id,
        hostname="mac-mini",
        payload=new_payload,
        is_new_host=False,
    )
    events = await _events(org_id)
    assert [event.event_type for event in events] == ["scan.completed", "grade.changed", "check.flipped"]
    assert events[1].detail_json["previous_grade"] == "B"
    assert events[2].detail_json["previous_status"] == "PASS"
    assert all(event.host_id == host_id for event in events)


@pytest.mark.asyncio
async def test_first_scan_of_existing_host_has_no_diff() -> None:
    org_id = await seed_org()
    host_id = await seed_host(org_id)
    scan_id = await seed_scan(org_id=org_id, host_id=host_id, grade="B", scanned_at=T0)
    await generate_scan_events(
        org_id=org_id,
        host_id=host_id,
        scan_id=scan_id,
        hostname="mac-mini",
        payload=_payload("B", {}, T0),
        is_new_host=False,
    )
    assert [event.event_type for event in await _events(org_id)] == ["scan.completed"]


@pytest.mark.asyncio
async def test_diff_failures_are_swallowed(monkeypatch) -> None:
    async def _boom(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(events_module, "load_prior_scan", _boom)
    result = await generate_scan_events(
        org_id="org",
        host_id="host",
        scan_id="scan",
        hostname="mac-mini",
        payload=_payload("B", {}, T0),
        is_new_host=False,
    )
    assert result == []


@pytest.mark.asyncio
async def test_agent_event_links_known_host() -> None:
    org_id = await seed_org()
    host_id = await seed_host(org_id, "mac-mini")
    async with SessionLocal() as session:
        await record_agent_event(
            session=session, org_id=org_id, event_type="agent.started", hostname="mac-mini"
        )
        await record_agent_event(
            session=session, org_id=org_id, event_type="agent.installed", hostname="new-box"
        )
    events = await _events(org_id)
    assert events[0].title == "Agent scan started on mac-mini"
    assert events[0].host_id == host_id
    assert events[0].actor == "agent"
    assert events[1].host_id is None
    assert events[1].detail_json == {"hostname": "new-box"}


@pytest.mark.asyncio
async def test_agent_event_rejects_unknown_type() -> None:
    org_id = await seed_org()
    async with SessionLocal() as session:
        with pytest.raises(AgentEventValidationError, match="Invalid event_type"):
            await record_agent_event(
                session=session, org_id=org_id, event_type="scan.completed", hostname="mac-mini"
            )
        with pytest.raises(AgentEventValidationError, match="hostname"):
            await record_agent_event(
                session=session, org_id=org_id, event_type="agent.started", hostname=""
            )
