from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from stratarag.core.config import get_settings
from stratarag.core.logging import configure_logging
from stratarag.persistence.db import SessionLocal
from stratarag.services.ingest.arbiter import reap_stale_jobs
from stratarag.services.ingest.dispatcher import dispatch_job, dispatch_pending
from stratarag.services.ingest.queue import set_worker_heartbeat


logger = logging.getLogger(__name__)


async def dispatch_ingestion_job(ctx, job_id: str) -> str | None:
    # Targeted kick enqueued at submission; the scheduler loop covers anything missed.
    outcome = await dispatch_job(job_id)
    return outcome.outcome if outcome is not None else None


async def run_scheduler_tick() -> int:
    # One pass: fail silent jobs first so they can be retried in the same tick.
    async with SessionLocal() as session:
        reaped = await reap_stale_jobs(session)
    outcomes = await dispatch_pending()
    if reaped or outcomes:
        logger.info("ingest_scheduler_tick reaped=%s dispatched=%s", reaped, len(outcomes))
    return len(outcomes)


async def _scheduler_loop() -> None:
    settings = get_settings()
    while True:
        try:
            await run_scheduler_tick()
        except Exception:  # noqa: BLE001 - keep the loop alive; the next tick retries
            logger.exception("ingest_scheduler_tick_failed")
        await asyncio.sleep(settings.ingest_dispatch_poll_interval_s)


async def _heartbeat_loop() -> None:
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat()
        except Exception:  # noqa: BLE001 - a missed beat shows up as staleness, not a crash
            logger.warning("worker_heartbeat_failed", exc_info=True)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop())


async def _shutdown(ctx) -> None:
    # Cancel background tasks to avoid dangling coroutines on exit.
    for key in ("heartbeat_task", "scheduler_task"):
        task = ctx.get(key)
        if task:
            task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.ingest_queue_name
    # Retries are owned by the job table, not by arq.
    max_tries = 1
    functions = [dispatch_ingestion_job]
    on_startup = _startup
    on_shutdown = _shutdown
