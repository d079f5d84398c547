"""Completion arbiter: the only code that finalizes ingestion jobs and their documents.

Synchronous dispatch results, asynchronous worker callbacks and the stale-job
reaper all converge on :func:`complete`. Every transition is a single
compare-and-set UPDATE guarded on ``(status, attempt_count)``; losers reload
and report the winner's state with ``applied=False``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.core.config import get_settings
from stratarag.core.errors import JobNotFoundError
from stratarag.core.config import EMBED_DIM
from stratarag.domain.models import Document, IngestionJob
from stratarag.persistence.repos import ingestion_jobs as jobs_repo
from stratarag.providers.llm.factory import get_llm_provider
from stratarag.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_SUCCESS_FROM = frozenset({"dispatched", "sent", "failed"})
_FAILURE_FROM = frozenset({"dispatched", "sent"})


@dataclass(frozen=True)
class CompletionResult:
    job_id: str
    document_id: str
    status: str
    attempt_count: int
    max_attempts: int
    chunk_count: int
    error_message: str | None
    next_retry_at: datetime | None
    terminal: bool
    applied: bool

    @classmethod
    def from_job(cls, job: IngestionJob, *, applied: bool) -> "CompletionResult":
        return cls(
            job_id=job.id,
            document_id=job.document_id,
            status=job.status,
            attempt_count=job.attempt_count,
            max_attempts=job.max_attempts,
            chunk_count=job.chunk_count,
            error_message=job.error_message,
            next_retry_at=job.next_retry_at,
            terminal=job.is_terminal,
            applied=applied,
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def backoff_delay(attempt_count: int) -> timedelta:
    # base ** attempt_count units; the unit is minutes unless tests shrink it.
    settings = get_settings()
    base = max(2, int(settings.ingest_backoff_base))
    unit_s = max(1, int(settings.ingest_backoff_unit_s))
    return timedelta(seconds=(base ** max(1, attempt_count)) * unit_s)


async def _load(session: AsyncSession, job_id: str) -> IngestionJob:
    job = await session.get(IngestionJob, job_id, populate_existing=True)
    if job is None:
        raise JobNotFoundError(f"Ingestion job not found: {job_id}")
    return job


async def _searchable_text(session: AsyncSession, document_id: str, content: str | None) -> str:
    # Without worker text, the title and filename still make the document findable.
    if content and content.strip():
        return content.strip()
    document = await session.get(Document, document_id)
    if document is None:
        return ""
    metadata = document.metadata_json or {}
    title = metadata.get("document_title") or metadata.get("title")
    return " ".join(part for part in (title, document.filename) if part)


async def _embed(text: str) -> list[float] | None:
    if not text:
        return None
    embedding = await get_llm_provider().embed(text)
    if len(embedding) != EMBED_DIM:
        raise ValueError(f"embedding has {len(embedding)} dimensions, expected {EMBED_DIM}")
    return embedding


async def _lost_race(session: AsyncSession, job_id: str) -> CompletionResult:
    await session.rollback()
    job = await _load(session, job_id)
    logger.info("ingest_completion_lost_race job_id=%s status=%s", job_id, job.status)
    return CompletionResult.from_job(job, applied=False)


async def complete(
    session: AsyncSession,
    job_id: str,
    *,
    success: bool,
    error_message: str | None = None,
    chunk_count: int = 0,
    worker_response: dict[str, Any] | None = None,
    content: str | None = None,
    now: datetime | None = None,
) -> CompletionResult:
    now = now or _utc_now()
    job = await _load(session, job_id)
    if job.is_terminal:
        # Duplicate callbacks land here; report the settled state untouched.
        increment_counter("ingest_completion_duplicates_total")
        logger.info("ingest_completion_duplicate job_id=%s status=%s", job_id, job.status)
        return CompletionResult.from_job(job, applied=False)
    allowed = _SUCCESS_FROM if success else _FAILURE_FROM
    if job.status not in allowed:
        logger.info(
            "ingest_completion_ignored job_id=%s status=%s success=%s", job_id, job.status, success
        )
        return CompletionResult.from_job(job, applied=False)

    guard = (IngestionJob.status == job.status) & (IngestionJob.attempt_count == job.attempt_count)
    values: dict[str, Any] = {"updated_at": now}
    if worker_response is not None:
        values["worker_response_json"] = worker_response
    if success:
        chunks = max(0, int(chunk_count or 0))
        values.update(
            status="completed",
            chunk_count=chunks,
            error_message=None,
            next_retry_at=None,
            completed_at=now,
        )
        text = await _searchable_text(session, job.document_id, content)
        doc_values: dict[str, Any] = {
            "status": "ready",
            "chunk_count": chunks,
            "content": text,
            "embedding": await _embed(text),
            "error_message": None,
            "completed_at": now,
            "updated_at": now,
        }
    else:
        message = error_message or "Ingestion failed"
        attempts = job.attempt_count + 1
        exhausted = attempts >= job.max_attempts
        values.update(
            status="failed",
            attempt_count=attempts,
            error_message=message,
            next_retry_at=None if exhausted else now + backoff_delay(attempts),
        )
        doc_values = {"status": "error", "error_message": message, "updated_at": now}

    if not await jobs_repo.compare_and_set(session, job_id, guard=guard, values=values):
        return await _lost_race(session, job_id)
    await session.execute(
        update(Document)
        .where(Document.id == job.document_id)
        .values(**doc_values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    job = await _load(session, job_id)

    if success:
        increment_counter("ingest_jobs_completed_total")
        logger.info("ingest_job_completed job_id=%s chunks=%s", job_id, job.chunk_count)
    elif job.is_terminal:
        increment_counter("ingest_jobs_exhausted_total")
        logger.warning(
            "ingest_job_exhausted job_id=%s attempts=%s error=%s",
            job_id,
            job.attempt_count,
            job.error_message,
        )
    else:
        increment_counter("ingest_jobs_retry_scheduled_total")
        logger.info(
            "ingest_job_retry_scheduled job_id=%s attempts=%s next_retry_at=%s",
            job_id,
            job.attempt_count,
            job.next_retry_at.isoformat() if job.next_retry_at else None,
        )
    return CompletionResult.from_job(job, applied=True)


async def record_sent(
    session: AsyncSession,
    job_id: str,
    *,
    worker_response: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> CompletionResult:
    # The worker accepted the job; its completion will arrive by callback.
    now = now or _utc_now()
    job = await _load(session, job_id)
    moved = await jobs_repo.compare_and_set(
        session,
        job_id,
        guard=IngestionJob.status == "dispatched",
        values={"status": "sent", "worker_response_json": worker_response or {}, "updated_at": now},
    )
    if not moved:
        # The callback may have beaten the acknowledgement; keep its result.
        return await _lost_race(session, job_id)
    await session.execute(
        update(Document)
        .where(Document.id == job.document_id, Document.status != "ready")
        .values(status="processing", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    logger.info("ingest_job_sent job_id=%s", job_id)
    return CompletionResult.from_job(await _load(session, job_id), applied=True)


async def reap_stale_jobs(session: AsyncSession, *, now: datetime | None = None, limit: int = 100) -> int:
    # Fail jobs whose worker never answered so they re-enter the retry path.
    now = now or _utc_now()
    settings = get_settings()
    windows = (
        ("dispatched", settings.ingest_dispatch_stale_after_s, "Vectorizer did not answer the dispatch"),
        ("sent", settings.ingest_callback_timeout_s, "Vectorizer completion callback timed out"),
    )
    reaped = 0
    for status, window_s, message in windows:
        stale_ids = await jobs_repo.list_stale_job_ids(
            session,
            status=status,
            attempted_before=now - timedelta(seconds=window_s),
            limit=limit,
        )
        for job_id in stale_ids:
            result = await complete(session, job_id, success=False, error_message=message, now=now)
            if result.applied:
                reaped += 1
    if reaped:
        increment_counter("ingest_jobs_reaped_total", reaped)
        logger.warning("ingest_stale_jobs_reaped count=%s", reaped)
    return reaped
