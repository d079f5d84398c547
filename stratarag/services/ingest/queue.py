from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from arq.constants import default_queue_name

from stratarag.core.config import get_settings
from stratarag.services.ingest.dispatcher import dispatch_job


logger = logging.getLogger(__name__)

WORKER_HEARTBEAT_KEY = "stratarag:ingest:worker-heartbeat"
DISPATCH_FUNCTION = "dispatch_ingestion_job"


class _PoolHolder:
    # arq pools are bound to the loop that created them; tests run one loop per test.
    def __init__(self) -> None:
        self.pool: ArqRedis | None = None
        self.loop: asyncio.AbstractEventLoop | None = None
        self.lock: asyncio.Lock | None = None

    async def get(self) -> ArqRedis:
        loop = asyncio.get_running_loop()
        if self.loop is not loop:
            self.pool, self.loop, self.lock = None, loop, asyncio.Lock()
        async with self.lock:
            if self.pool is None:
                settings = get_settings()
                self.pool = await create_pool(
                    RedisSettings.from_dsn(settings.redis_url),
                    default_queue_name=settings.ingest_queue_name,
                )
        return self.pool


_pools = _PoolHolder()


def is_inline_mode() -> bool:
    return get_settings().ingest_execution_mode.lower() == "inline"


async def get_redis_pool() -> ArqRedis:
    return await _pools.get()


async def enqueue_dispatch(job_id: str) -> bool:
    """Ask a worker to dispatch ``job_id`` now.

    Inline mode dispatches in-process before returning. A failed enqueue is
    logged and reported as False; the job row stays ``queued`` and the
    scheduler loop picks it up on its next tick.
    """
    if is_inline_mode():
        await dispatch_job(job_id)
        return True
    try:
        pool = await get_redis_pool()
        # One kick per job id; a duplicate enqueue while one is pending is a no-op in arq.
        await pool.enqueue_job(DISPATCH_FUNCTION, job_id, _job_id=f"dispatch:{job_id}")
    except Exception as exc:  # noqa: BLE001 - the scheduler loop covers a missed kick
        logger.warning("ingest_enqueue_failed job_id=%s error=%s", job_id, type(exc).__name__)
        return False
    return True


async def get_queue_depth() -> int | None:
    # None means Redis could not be reached.
    if is_inline_mode():
        return 0
    queue_name = get_settings().ingest_queue_name or default_queue_name
    try:
        pool = await get_redis_pool()
        return int(await pool.zcard(queue_name))
    except Exception:  # noqa: BLE001 - reported as degraded by the ops endpoint
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    if is_inline_mode():
        return
    settings = get_settings()
    stamp = (timestamp or datetime.now(timezone.utc)).isoformat()
    pool = await get_redis_pool()
    # The key expires on its own when the worker dies, so a stale stamp reads as missing.
    await pool.set(WORKER_HEARTBEAT_KEY, stamp, ex=max(1, settings.worker_heartbeat_interval_s * 6))


async def get_worker_heartbeat() -> datetime | None:
    if is_inline_mode():
        return None
    try:
        pool = await get_redis_pool()
        raw = await pool.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - reported as degraded by the ops endpoint
        return None
    if raw is None:
        return None
    text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.warning("worker_heartbeat_unreadable value=%r", text)
        return None
