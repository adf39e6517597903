from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from clawkeeper.core.config import get_settings
from clawkeeper.domain.scans import ScanPayload
from clawkeeper.services.alerts import evaluate_alerts
from clawkeeper.services.events import generate_scan_events
from clawkeeper.services.insights import generate_insights


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Strong references keep fire-and-forget tasks alive until they finish.
_background_tasks: set[asyncio.Task] = set()

SIDE_EFFECT_JOB_NAME = "process_scan_side_effects"


class ScanSideEffectJob(BaseModel):
    # Handoff from the ingestion path to the post-commit consumers.
    org_id: str
    host_id: str
    scan_id: str
    hostname: str
    is_new_host: bool
    payload: dict[str, Any]

    @classmethod
    def from_scan(
        cls,
        *,
        org_id: str,
        host_id: str,
        scan_id: str,
        payload: ScanPayload,
        is_new_host: bool,
    ) -> "ScanSideEffectJob":
        return cls(
            org_id=org_id,
            host_id=host_id,
            scan_id=scan_id,
            hostname=payload.hostname,
            is_new_host=is_new_host,
            payload=payload.to_job_dict(),
        )

    def scan_payload(self) -> ScanPayload:
        return ScanPayload.from_job_dict(self.payload)


async def get_redis_pool():
    # Cache the Redis pool per event loop to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.side_effect_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def dispatch_scan_side_effects(job: ScanSideEffectJob) -> None:
    """Hand a committed scan to the diff, alert and insight consumers.

    Never raises: the scan is already durable, so dispatch problems are only
    logged. The mode comes from side_effect_execution_mode.
    """
    mode = get_settings().side_effect_execution_mode.lower()
    if mode == "inline":
        await run_scan_side_effects(job)
        return
    if mode == "queue":
        try:
            redis = await get_redis_pool()
            await redis.enqueue_job(
                SIDE_EFFECT_JOB_NAME,
                job.model_dump(),
                _job_id=f"scan-side-effects:{job.scan_id}",
                _queue_name=get_settings().side_effect_queue_name,
            )
            return
        except Exception as exc:  # noqa: BLE001 - fall back to in-process execution
            logger.warning(
                "side_effect_enqueue_failed scan_id=%s fallback=background",
                job.scan_id,
                exc_info=exc,
            )
    for name, call in _consumers(job):
        _spawn(name, job, call)


async def run_scan_side_effects(job: ScanSideEffectJob) -> None:
    # Sequential execution shared by inline mode and the queue worker.
    for name, call in _consumers(job):
        await _guarded(name, job, call)


async def drain_background_tasks() -> None:
    # Await everything spawned so far; used at shutdown and by tests.
    while _background_tasks:
        await asyncio.gather(*list(_background_tasks), return_exceptions=True)


def _consumers(job: ScanSideEffectJob) -> list[tuple[str, Awaitable[Any]]]:
    payload = job.scan_payload()
    return [
        (
            "events",
            generate_scan_events(
                org_id=job.org_id,
                host_id=job.host_id,
                scan_id=job.scan_id,
                hostname=job.hostname,
                payload=payload,
                is_new_host=job.is_new_host,
            ),
        ),
        (
            "alerts",
            evaluate_alerts(
                org_id=job.org_id,
                host_id=job.host_id,
                scan_id=job.scan_id,
                payload=payload,
            ),
        ),
        (
            "insights",
            generate_insights(
                org_id=job.org_id,
                host_id=job.host_id,
                scan_id=job.scan_id,
                payload=payload,
            ),
        ),
    ]


def _spawn(name: str, job: ScanSideEffectJob, call: Awaitable[Any]) -> None:
    task = asyncio.create_task(_guarded(name, job, call), name=f"scan-{name}-{job.scan_id}")
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def _guarded(name: str, job: ScanSideEffectJob, call: Awaitable[Any]) -> None:
    # Each consumer has its own error boundary.
    try:
        await call
    except Exception as exc:  # noqa: BLE001 - side effects are logged and swallowed
        logger.warning(
            "side_effect_failed consumer=%s org_id=%s scan_id=%s",
            name,
            job.org_id,
            job.scan_id,
            exc_info=exc,
        )
