from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.apps.api.deps import get_caller, get_db, require_callback_secret
from stratarag.apps.api.errors import error_detail
from stratarag.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stratarag.apps.api.response import SuccessEnvelope, success_response
from stratarag.core.errors import JobNotFoundError, ValidationError
from stratarag.domain.models import IngestionJob
from stratarag.services.access.engine import AccessProfile, can_attribute, can_operate_jobs, can_publish
from stratarag.services.ingest import arbiter
from stratarag.services.ingest.dispatcher import dispatch_pending
from stratarag.services.ingest.jobs import JobSpec, get_job, list_jobs, submit
from stratarag.services.ingest.queue import enqueue_dispatch
from stratarag.services.ingest.vectorizer import reply_content


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/ingestion", tags=["ingestion"], responses=DEFAULT_ERROR_RESPONSES)


class JobSubmitRequest(BaseModel):
    source_ref: str = Field(min_length=1)
    filename: str = Field(min_length=1)
    mime_type: str = Field(min_length=1)
    layer: Literal["app", "org", "project", "user"]
    org_id: str | None = None
    project_id: str | None = None
    target_project_ids: list[str] = Field(default_factory=list)
    created_by: str | None = None
    audience_tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None
    storage_path: str | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=10)

    model_config = {"extra": "forbid"}


class JobAccepted(BaseModel):
    job_id: str
    document_id: str
    status: str


class JobResponse(BaseModel):
    id: str
    document_id: str
    source_ref: str
    layer: str
    org_id: str | None
    created_by: str | None
    status: str
    attempt_count: int
    max_attempts: int
    next_retry_at: datetime | None
    last_attempt_at: datetime | None
    error_message: str | None
    chunk_count: int
    terminal: bool
    created_at: datetime | None
    completed_at: datetime | None


class CallbackRequest(BaseModel):
    job_id: str = Field(min_length=1)
    success: bool
    error_message: str | None = None
    chunks_count: int | None = Field(default=None, ge=0)
    content: str | None = None
    chunks: list[str | dict[str, Any]] | None = None


class CompletionResponse(BaseModel):
    job_id: str
    document_id: str
    status: str
    attempt_count: int
    chunk_count: int
    error_message: str | None
    next_retry_at: datetime | None
    terminal: bool
    applied: bool


class DispatchResponse(BaseModel):
    reaped: int
    handled: int
    outcomes: list[dict[str, Any]]


def _to_job_response(job: IngestionJob) -> JobResponse:
    return JobResponse(
        id=job.id,
        document_id=job.document_id,
        source_ref=job.source_ref,
        layer=job.layer,
        org_id=job.org_id,
        created_by=job.created_by,
        status=job.status,
        attempt_count=job.attempt_count,
        max_attempts=job.max_attempts,
        next_retry_at=job.next_retry_at,
        last_attempt_at=job.last_attempt_at,
        error_message=job.error_message,
        chunk_count=job.chunk_count,
        terminal=job.is_terminal,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


def _to_completion_response(result: arbiter.CompletionResult) -> CompletionResponse:
    return CompletionResponse(
        job_id=result.job_id,
        document_id=result.document_id,
        status=result.status,
        attempt_count=result.attempt_count,
        chunk_count=result.chunk_count,
        error_message=result.error_message,
        next_retry_at=result.next_retry_at,
        terminal=result.terminal,
        applied=result.applied,
    )


def _forbidden(message: str) -> HTTPException:
    return HTTPException(status_code=403, detail=error_detail("AUTH_FORBIDDEN", message))


@router.post("/jobs", status_code=202, response_model=SuccessEnvelope[JobAccepted])
async def submit_job(
    request: Request,
    payload: JobSubmitRequest,
    caller: AccessProfile = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    spec = JobSpec(**payload.model_dump())
    if spec.layer == "user" and spec.org_id is None:
        spec.org_id = caller.org_id
    if not can_attribute(caller, created_by=spec.created_by, org_id=spec.org_id):
        raise _forbidden("Caller may not submit content on behalf of another user")
    if spec.created_by is None:
        spec.created_by = caller.caller_id
    if not can_publish(caller, layer=spec.layer, org_id=spec.org_id, project_ids=spec.project_targets()):
        raise _forbidden(f"Caller may not publish to the {spec.layer} layer")
    try:
        job = await submit(db, spec)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=error_detail("INGEST_VALIDATION_ERROR", str(exc))) from exc
    await enqueue_dispatch(job.id)
    await db.refresh(job)
    data = JobAccepted(job_id=job.id, document_id=job.document_id, status=job.status)
    return success_response(request=request, data=data)


@router.get("/jobs", response_model=SuccessEnvelope[list[JobResponse]])
async def list_ingestion_jobs(
    request: Request,
    org_id: str | None = None,
    status: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    caller: AccessProfile = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if not caller.is_super_admin:
        if not caller.is_org_admin:
            raise _forbidden("Only operators may list ingestion jobs")
        # Org admins only ever see their own organization's queue.
        if org_id is not None and org_id != caller.org_id:
            raise _forbidden("Org admins may only list their own organization's jobs")
        org_id = caller.org_id
    jobs = await list_jobs(db, org_id=org_id, status=status, limit=limit)
    return success_response(request=request, data=[_to_job_response(job).model_dump(mode="json") for job in jobs])


@router.get("/jobs/{job_id}", response_model=SuccessEnvelope[JobResponse])
async def get_ingestion_job(
    request: Request,
    job_id: str,
    caller: AccessProfile = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        job = await get_job(db, job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=error_detail("NOT_FOUND", "Ingestion job not found")) from exc
    is_owner = job.created_by is not None and job.created_by == caller.caller_id
    if not (is_owner or can_operate_jobs(caller, job.org_id)):
        raise HTTPException(status_code=404, detail=error_detail("NOT_FOUND", "Ingestion job not found"))
    return success_response(request=request, data=_to_job_response(job))


@router.post("/callback", response_model=SuccessEnvelope[CompletionResponse])
async def completion_callback(
    request: Request,
    payload: CallbackRequest,
    _secret: None = Depends(require_callback_secret),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Late or duplicate callbacks are answered with the settled state, never an error.
    try:
        result = await arbiter.complete(
            db,
            payload.job_id,
            success=payload.success,
            error_message=payload.error_message,
            chunk_count=payload.chunks_count or 0,
            worker_response=payload.model_dump(exclude={"content", "chunks"}),
            content=reply_content(payload.model_dump()),
        )
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=error_detail("NOT_FOUND", "Ingestion job not found")) from exc
    logger.info(
        "ingest_callback_received job_id=%s success=%s applied=%s",
        payload.job_id,
        payload.success,
        result.applied,
    )
    return success_response(request=request, data=_to_completion_response(result))


@router.post("/dispatch", response_model=SuccessEnvelope[DispatchResponse])
async def trigger_dispatch(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=500),
    caller: AccessProfile = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # The queue is global, so only super admins may drain it by hand.
    if not caller.is_super_admin:
        raise _forbidden("Only super admins may trigger dispatch")
    reaped = await arbiter.reap_stale_jobs(db)
    outcomes = await dispatch_pending(limit)
    data = DispatchResponse(
        reaped=reaped,
        handled=len(outcomes),
        outcomes=[
            {"job_id": item.job_id, "outcome": item.outcome, "status": item.result.status}
            for item in outcomes
        ],
    )
    return success_response(request=request, data=data)
