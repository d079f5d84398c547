from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.core.config import get_settings
from stratarag.core.errors import JobNotFoundError, ValidationError
from stratarag.domain.models import LAYERS, IngestionJob
from stratarag.persistence.repos import documents as documents_repo
from stratarag.persistence.repos import ingestion_jobs as jobs_repo
from stratarag.persistence.repos import projects as projects_repo
from stratarag.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ACCEPTED_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "text/plain",
        "text/markdown",
        "text/csv",
        "image/png",
        "image/jpeg",
        "image/webp",
    }
)


class JobSpec(BaseModel):
    # Submission contract shared by the upload and transcription collaborators.
    source_ref: str = Field(min_length=1)
    filename: str = Field(min_length=1)
    mime_type: str = Field(min_length=1)
    layer: str
    org_id: str | None = None
    project_id: str | None = None
    target_project_ids: list[str] = Field(default_factory=list)
    created_by: str | None = None
    audience_tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None
    storage_path: str | None = None
    max_attempts: int | None = None

    def project_targets(self) -> list[str]:
        # An explicit project_id wins over the metadata-provided list.
        if self.project_id:
            return [self.project_id]
        return sorted({pid for pid in self.target_project_ids if pid})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_layer_targets(
    layer: str,
    *,
    org_id: str | None,
    project_ids: list[str],
    created_by: str | None,
) -> None:
    # Layer invariants shared by submission and re-tagging.
    if layer not in LAYERS:
        raise ValidationError(f"Unsupported layer: {layer}")
    if layer == "org" and not org_id:
        raise ValidationError("Org-layer documents require an org_id")
    if layer == "project":
        if not project_ids:
            raise ValidationError("Project-layer documents require at least one target project")
        if not org_id:
            raise ValidationError("Project-layer documents require an org_id")
    if layer == "user" and not created_by:
        raise ValidationError("User-layer documents require created_by")


def validate_job_spec(spec: JobSpec) -> None:
    # Checked before anything touches the database.
    mime_type = spec.mime_type.split(";", 1)[0].strip().lower()
    if mime_type not in ACCEPTED_MIME_TYPES:
        raise ValidationError(f"Unsupported mime type: {spec.mime_type}")
    if spec.max_attempts is not None and spec.max_attempts < 1:
        raise ValidationError("max_attempts must be at least 1")
    validate_layer_targets(
        spec.layer,
        org_id=spec.org_id,
        project_ids=spec.project_targets(),
        created_by=spec.created_by,
    )


async def validate_project_targets(session: AsyncSession, project_ids: list[str], *, org_id: str | None) -> list[str]:
    # Every target project must exist and belong to the document's organization.
    targets = sorted(set(project_ids))
    if not targets:
        return []
    owners = await projects_repo.list_project_org_ids(session, targets)
    missing = [pid for pid in targets if pid not in owners]
    if missing:
        raise ValidationError(f"Unknown project(s): {', '.join(missing)}")
    foreign = [pid for pid in targets if owners[pid] != org_id]
    if foreign:
        raise ValidationError(f"Project(s) do not belong to organization {org_id}: {', '.join(foreign)}")
    return targets


async def submit(session: AsyncSession, spec: JobSpec) -> IngestionJob:
    # Persist a pending document and its queued job atomically.
    validate_job_spec(spec)
    project_ids = await validate_project_targets(session, spec.project_targets(), org_id=spec.org_id)
    settings = get_settings()
    audience_tags = sorted({tag for tag in spec.audience_tags if tag})
    document_id = uuid4().hex
    mime_type = spec.mime_type.split(";", 1)[0].strip().lower()
    await documents_repo.create_document(
        session,
        document_id=document_id,
        org_id=spec.org_id,
        layer=spec.layer,
        created_by=spec.created_by,
        source_ref=spec.source_ref,
        filename=spec.filename,
        mime_type=mime_type,
        project_ids=project_ids,
        app_ids=audience_tags,
        metadata_json=spec.metadata,
    )
    job = IngestionJob(
        id=uuid4().hex,
        document_id=document_id,
        source_ref=spec.source_ref,
        payload_json={
            "filename": spec.filename,
            "mime_type": mime_type,
            "path": spec.storage_path or spec.source_ref,
            "storage_bucket": settings.storage_bucket,
            "target_projects": project_ids,
            "target_apps": audience_tags,
            "metadata": spec.metadata or {},
        },
        layer=spec.layer,
        org_id=spec.org_id,
        created_by=spec.created_by,
        status="queued",
        attempt_count=0,
        max_attempts=spec.max_attempts or settings.ingest_max_attempts,
    )
    session.add(job)
    await session.commit()
    await session.refresh(job)
    increment_counter("ingest_jobs_submitted_total")
    logger.info(
        "ingest_job_submitted job_id=%s document_id=%s layer=%s org_id=%s",
        job.id,
        document_id,
        job.layer,
        job.org_id,
    )
    return job


async def _claim(session: AsyncSession, *, now: datetime, job_id: str | None) -> IngestionJob | None:
    candidates = await jobs_repo.list_eligible_job_ids(session, now=now, limit=5, job_id=job_id)
    for candidate in candidates:
        claimed = await jobs_repo.compare_and_set(
            session,
            candidate,
            guard=jobs_repo.eligible_clause(now),
            values={
                "status": "dispatched",
                "dispatched_at": now,
                "last_attempt_at": now,
                "updated_at": now,
            },
        )
        if not claimed:
            # Another dispatcher won this one; try the next candidate.
            continue
        await session.commit()
        job = await session.get(IngestionJob, candidate, populate_existing=True)
        increment_counter("ingest_jobs_claimed_total")
        logger.info("ingest_job_claimed job_id=%s attempt=%s", candidate, job.attempt_count + 1 if job else None)
        return job
    await session.rollback()
    return None


async def claim_next(session: AsyncSession, *, now: datetime | None = None) -> IngestionJob | None:
    # Atomically move the oldest eligible job to dispatched; None when nothing is eligible.
    return await _claim(session, now=now or _utc_now(), job_id=None)


async def claim_job(session: AsyncSession, job_id: str, *, now: datetime | None = None) -> IngestionJob | None:
    return await _claim(session, now=now or _utc_now(), job_id=job_id)


async def get_job(session: AsyncSession, job_id: str) -> IngestionJob:
    job = await jobs_repo.get_job(session, job_id)
    if job is None:
        raise JobNotFoundError(f"Ingestion job not found: {job_id}")
    return job


async def list_jobs(
    session: AsyncSession,
    *,
    org_id: str | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[IngestionJob]:
    return await jobs_repo.list_jobs(session, org_id=org_id, status=status, limit=limit)
