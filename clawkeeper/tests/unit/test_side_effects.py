from __future__ import annotations

from datetime import datetime, timezone

import pytest

from clawkeeper.core.config import get_settings
from clawkeeper.domain.scans import CheckResult, ScanPayload
from clawkeeper.services import side_effects
from clawkeeper.services.side_effects import (
    SIDE_EFFECT_JOB_NAME,
    ScanSideEffectJob,
    dispatch_scan_side_effects,
    drain_background_tasks,
)


def _job() -> ScanSideEffectJob:
    payload = ScanPayload(
        hostname="web-1",
        platform="linux",
        score=72.5,
        grade="C",
        scanned_at=datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc),
        checks=(CheckResult(status="FAIL", check_name="Firewall", detail="off"),),
        raw_report="large report body",
    )
    return ScanSideEffectJob.from_scan(
        org_id="org-1", host_id="host-1", scan_id="scan-1", payload=payload, is_new_host=True
    )


@pytest.fixture
def consumer_calls(monkeypatch) -> list[str]:
    calls: list[str] = []

    async def _events(**kwargs):
        calls.append("events")

    async def _alerts(**kwargs):
        calls.append("alerts")

    async def _insights(**kwargs):
        raise RuntimeError("insights broke")

    monkeypatch.setattr(side_effects, "generate_scan_events", _events)
    monkeypatch.setattr(side_effects, "evaluate_alerts", _alerts)
    monkeypatch.setattr(side_effects, "generate_insights", _insights)
    return calls


def test_job_drops_raw_report_but_keeps_checks() -> None:
    job = ScanSideEffectJob.model_validate(_job().model_dump())
    payload = job.scan_payload()

    assert "raw_report" not in job.payload
    assert payload.raw_report == ""
    assert payload.checks[0].check_name == "Firewall"
    assert payload.scanned_at == datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_inline_mode_runs_every_consumer(monkeypatch, consumer_calls) -> None:
    monkeypatch.setenv("SIDE_EFFECT_EXECUTION_MODE", "inline")
    get_settings.cache_clear()

    await dispatch_scan_side_effects(_job())

    assert consumer_calls == ["events", "alerts"]


@pytest.mark.asyncio
async def test_background_mode_spawns_tasks(monkeypatch, consumer_calls) -> None:
    monkeypatch.setenv("SIDE_EFFECT_EXECUTION_MODE", "background")
    get_settings.cache_clear()

    await dispatch_scan_side_effects(_job())
    await drain_background_tasks()

    assert sorted(consumer_calls) == ["alerts", "events"]


@pytest.mark.asyncio
async def test_queue_mode_enqueues_job(monkeypatch, consumer_calls) -> None:
    monkeypatch.setenv("SIDE_EFFECT_EXECUTION_MODE", "queue")
    get_settings.cache_clear()
    enqueued: list[tuple] = []

    class _FakeRedis:
        async def enqueue_job(self, name, payload, **kwargs):
            enqueued.append((name, payload, kwargs))

    async def _pool():
        return _FakeRedis()

    monkeypatch.setattr(side_effects, "get_redis_pool", _pool)
    await dispatch_scan_side_effects(_job())

    name, payload, kwargs = enqueued[0]
    assert name == SIDE_EFFECT_JOB_NAME
    assert payload["scan_id"] == "scan-1"
    assert kwargs["_job_id"] == "scan-side-effects:scan-1"
    assert consumer_calls == []


@pytest.mark.asyncio
async def test_queue_failure_falls_back_to_background(monkeypatch, consumer_calls) -> None:
    monkeypatch.setenv("SIDE_EFFECT_EXECUTION_MODE", "queue")
    get_settings.cache_clear()

    async def _pool():
        raise ConnectionError("redis down")

    monkeypatch.setattr(side_effects, "get_redis_pool", _pool)
    await dispatch_scan_side_effects(_job())
    await drain_background_tasks()

    assert sorted(consumer_calls) == ["alerts", "events"]
