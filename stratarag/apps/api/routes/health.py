from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.apps.api.deps import get_caller, get_db
from stratarag.apps.api.errors import error_detail
from stratarag.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stratarag.apps.api.response import SuccessEnvelope, success_response
from stratarag.core.config import get_settings
from stratarag.domain.models import IngestionJob
from stratarag.services.access.engine import AccessProfile
from stratarag.services.ingest import queue as ingest_queue
from stratarag.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
    set_gauge,
)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _check_db_health(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return False
    return True


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Liveness only; no caller identity required.
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload)


@router.get("/ops/ingestion", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_ingestion(
    request: Request,
    caller: AccessProfile = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if not (caller.is_super_admin or caller.is_org_admin):
        raise HTTPException(
            status_code=403,
            detail=error_detail("AUTH_FORBIDDEN", "Only operators may view ingestion health"),
        )
    settings = get_settings()
    now = _utc_now()
    db_ok = await _check_db_health(db)

    queue_depth = await ingest_queue.get_queue_depth()
    redis_ok = queue_depth is not None
    if redis_ok:
        set_gauge("ingest_queue_depth", float(queue_depth))

    heartbeat = await ingest_queue.get_worker_heartbeat() if redis_ok else None
    heartbeat_age_s = (now - heartbeat).total_seconds() if heartbeat else None
    # Inline mode runs without a worker, so a missing heartbeat is expected there.
    heartbeat_stale = not ingest_queue.is_inline_mode() and (
        heartbeat_age_s is None or heartbeat_age_s > settings.worker_heartbeat_interval_s * 3
    )

    stmt = select(IngestionJob.status, func.count()).group_by(IngestionJob.status)
    # Org admins only see their own organization's share of the queue.
    if not caller.is_super_admin:
        stmt = stmt.where(IngestionJob.org_id == caller.org_id)
    jobs_by_status: dict[str, int] = {}
    if db_ok:
        result = await db.execute(stmt)
        jobs_by_status = {str(status): int(count) for status, count in result.all()}

    status = "ok" if db_ok and redis_ok and not heartbeat_stale else "degraded"
    payload = {
        "status": status,
        "db": "ok" if db_ok else "degraded",
        "redis": "ok" if redis_ok else "degraded",
        "execution_mode": settings.ingest_execution_mode,
        "queue_depth": queue_depth,
        "worker_heartbeat_age_s": heartbeat_age_s,
        "jobs_by_status": jobs_by_status,
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
        "external_latency": external_latency_by_integration(300),
        "timestamp": now.isoformat(),
    }
    return success_response(request=request, data=payload)
