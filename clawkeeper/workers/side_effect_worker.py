from __future__ import annotations

import logging

from arq.connections import RedisSettings

from clawkeeper.core.config import get_settings
from clawkeeper.core.logging import configure_logging
from clawkeeper.persistence.db import engine
from clawkeeper.services.side_effects import ScanSideEffectJob, run_scan_side_effects


logger = logging.getLogger(__name__)


async def process_scan_side_effects(ctx, payload: dict) -> None:
    # Validate the handoff schema in the worker before touching the database.
    job = ScanSideEffectJob.model_validate(payload)
    logger.info(
        "side_effect_job_started job_id=%s scan_id=%s", ctx.get("job_id"), job.scan_id
    )
    await run_scan_side_effects(job)


async def _startup(ctx) -> None:
    configure_logging()


async def _shutdown(ctx) -> None:
    # Close pooled connections so the worker exits cleanly.
    await engine.dispose()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.side_effect_queue_name
    # Consumers are best-effort and not idempotent for notifications; never retry.
    max_tries = 1
    functions = [process_scan_side_effects]
    on_startup = _startup
    on_shutdown = _shutdown
