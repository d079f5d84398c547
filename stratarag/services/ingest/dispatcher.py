from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from stratarag.core.config import get_settings
from stratarag.core.errors import TransportError, WorkerApplicationError
from stratarag.domain.models import IngestionJob
from stratarag.persistence.db import SessionLocal
from stratarag.services.ingest import arbiter
from stratarag.services.ingest.arbiter import CompletionResult
from stratarag.services.ingest.jobs import claim_job, claim_next
from stratarag.services.ingest.vectorizer import build_vectorizer_payload, send_to_vectorizer
from stratarag.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchOutcome:
    job_id: str
    # "completed", "sent", "failed" or "exhausted"
    outcome: str
    result: CompletionResult


async def _hand_off(job: IngestionJob) -> DispatchOutcome:
    # Runs with no session open: the worker call must never hold a transaction.
    payload = build_vectorizer_payload(job)
    try:
        reply = await send_to_vectorizer(payload)
    except (TransportError, WorkerApplicationError) as exc:
        kind = "transport" if isinstance(exc, TransportError) else "worker"
        increment_counter(f"ingest_dispatch_failures_total.{kind}")
        logger.warning("ingest_dispatch_failed job_id=%s kind=%s error=%s", job.id, kind, exc.message)
        async with SessionLocal() as session:
            result = await arbiter.complete(
                session,
                job.id,
                success=False,
                error_message=exc.message,
                worker_response=exc.response,
            )
        return DispatchOutcome(job.id, "exhausted" if result.terminal and result.status == "failed" else "failed", result)

    async with SessionLocal() as session:
        if reply.acknowledged:
            result = await arbiter.record_sent(session, job.id, worker_response=reply.response)
            return DispatchOutcome(job.id, "sent" if result.status == "sent" else result.status, result)
        result = await arbiter.complete(
            session,
            job.id,
            success=True,
            chunk_count=reply.chunk_count,
            worker_response=reply.response,
            content=reply.content,
        )
    return DispatchOutcome(job.id, "completed", result)


async def dispatch_next(*, now: datetime | None = None) -> DispatchOutcome | None:
    # Claim one eligible job and hand it to the vectorizer; None when nothing is eligible.
    async with SessionLocal() as session:
        job = await claim_next(session, now=now)
    if job is None:
        return None
    return await _hand_off(job)


async def dispatch_job(job_id: str, *, now: datetime | None = None) -> DispatchOutcome | None:
    # Targeted kick right after submission; a concurrent claimer simply wins.
    async with SessionLocal() as session:
        job = await claim_job(session, job_id, now=now)
    if job is None:
        logger.info("ingest_dispatch_skipped job_id=%s reason=not_eligible", job_id)
        return None
    return await _hand_off(job)


async def dispatch_pending(limit: int | None = None, *, now: datetime | None = None) -> list[DispatchOutcome]:
    # Drain eligible jobs for one scheduler tick.
    limit = limit or get_settings().ingest_dispatch_batch_size
    outcomes: list[DispatchOutcome] = []
    while len(outcomes) < limit:
        outcome = await dispatch_next(now=now)
        if outcome is None:
            break
        outcomes.append(outcome)
    if outcomes:
        logger.info("ingest_dispatch_batch handled=%s", len(outcomes))
    return outcomes
