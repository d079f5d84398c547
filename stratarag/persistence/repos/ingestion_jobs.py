from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.domain.models import IngestionJob


def eligible_clause(now: datetime) -> ColumnElement[bool]:
    # Queued jobs, or failed jobs whose backoff elapsed and budget remains.
    return or_(
        IngestionJob.status == "queued",
        and_(
            IngestionJob.status == "failed",
            IngestionJob.next_retry_at.is_not(None),
            IngestionJob.next_retry_at <= now,
            IngestionJob.attempt_count < IngestionJob.max_attempts,
        ),
    )


async def get_job(session: AsyncSession, job_id: str) -> IngestionJob | None:
    result = await session.execute(select(IngestionJob).where(IngestionJob.id == job_id))
    return result.scalar_one_or_none()


async def list_jobs(
    session: AsyncSession,
    *,
    org_id: str | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[IngestionJob]:
    stmt = select(IngestionJob)
    if org_id is not None:
        stmt = stmt.where(IngestionJob.org_id == org_id)
    if status:
        stmt = stmt.where(IngestionJob.status == status)
    stmt = stmt.order_by(IngestionJob.created_at.desc(), IngestionJob.id).limit(max(1, min(limit, 500)))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_eligible_job_ids(
    session: AsyncSession,
    *,
    now: datetime,
    limit: int,
    job_id: str | None = None,
) -> list[str]:
    # Oldest first so retries do not starve fresh submissions indefinitely.
    stmt = select(IngestionJob.id).where(eligible_clause(now))
    if job_id is not None:
        stmt = stmt.where(IngestionJob.id == job_id)
    stmt = stmt.order_by(IngestionJob.created_at.asc(), IngestionJob.id.asc()).limit(max(1, limit))
    result = await session.execute(stmt)
    return [str(row) for row in result.scalars().all()]


async def list_stale_job_ids(
    session: AsyncSession,
    *,
    status: str,
    attempted_before: datetime,
    limit: int,
) -> list[str]:
    stmt = (
        select(IngestionJob.id)
        .where(
            IngestionJob.status == status,
            IngestionJob.last_attempt_at.is_not(None),
            IngestionJob.last_attempt_at <= attempted_before,
        )
        .order_by(IngestionJob.last_attempt_at.asc())
        .limit(max(1, limit))
    )
    result = await session.execute(stmt)
    return [str(row) for row in result.scalars().all()]


async def compare_and_set(
    session: AsyncSession,
    job_id: str,
    *,
    guard: ColumnElement[bool],
    values: dict[str, Any],
) -> bool:
    # Single conditional UPDATE; exactly one concurrent caller observes rowcount 1.
    result = await session.execute(
        update(IngestionJob)
        .where(IngestionJob.id == job_id, guard)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1
