from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.apps.api.deps import get_caller, get_db
from stratarag.apps.api.errors import error_detail
from stratarag.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stratarag.apps.api.response import SuccessEnvelope, success_response
from stratarag.core.errors import ValidationError
from stratarag.domain.models import Document
from stratarag.persistence.repos import documents as documents_repo
from stratarag.services.access.engine import (
    AccessProfile,
    can_publish,
    can_retag,
    can_view,
    visibility_clause,
)
from stratarag.services.ingest.jobs import validate_layer_targets, validate_project_targets


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/documents", tags=["documents"], responses=DEFAULT_ERROR_RESPONSES)


class DocumentResponse(BaseModel):
    id: str
    org_id: str | None
    layer: str
    created_by: str | None
    source_ref: str
    filename: str
    mime_type: str
    status: str
    chunk_count: int
    error_message: str | None
    target_project_ids: list[str]
    audience_tags: list[str]
    metadata: dict[str, Any] | None
    created_at: str | None
    updated_at: str | None
    completed_at: str | None


class LayerUpdateRequest(BaseModel):
    layer: Literal["app", "org", "project", "user"]
    org_id: str | None = None
    target_project_ids: list[str] = Field(default_factory=list)
    audience_tags: list[str] = Field(default_factory=list)

    model_config = {"extra": "forbid"}


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _to_response(doc: Document) -> DocumentResponse:
    return DocumentResponse(
        id=doc.id,
        org_id=doc.org_id,
        layer=doc.layer,
        created_by=doc.created_by,
        source_ref=doc.source_ref,
        filename=doc.filename,
        mime_type=doc.mime_type,
        status=doc.status,
        chunk_count=doc.chunk_count,
        error_message=doc.error_message,
        target_project_ids=sorted(doc.target_project_ids),
        audience_tags=sorted(doc.target_app_ids),
        metadata=doc.metadata_json,
        created_at=_iso(doc.created_at),
        updated_at=_iso(doc.updated_at),
        completed_at=_iso(doc.completed_at),
    )


def _not_found() -> HTTPException:
    # Invisible and missing documents look the same to the caller.
    return HTTPException(status_code=404, detail=error_detail("NOT_FOUND", "Document not found"))


@router.get("", response_model=SuccessEnvelope[list[DocumentResponse]])
async def list_documents(
    request: Request,
    status: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    caller: AccessProfile = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    docs = await documents_repo.list_documents(db, scope=visibility_clause(caller), status=status, limit=limit)
    return success_response(request=request, data=[_to_response(doc).model_dump() for doc in docs])


@router.get("/{document_id}", response_model=SuccessEnvelope[DocumentResponse])
async def get_document(
    request: Request,
    document_id: str,
    caller: AccessProfile = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    doc = await documents_repo.get_document_by_id(db, document_id)
    if doc is None or not can_view(caller, doc):
        raise _not_found()
    return success_response(request=request, data=_to_response(doc))


@router.patch("/{document_id}/layer", response_model=SuccessEnvelope[DocumentResponse])
async def update_document_layer(
    request: Request,
    document_id: str,
    payload: LayerUpdateRequest,
    caller: AccessProfile = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    doc = await documents_repo.get_document_by_id(db, document_id)
    if doc is None or not can_view(caller, doc):
        raise _not_found()
    # The caller must control the document today and be allowed to publish where it is going.
    project_ids = sorted({pid for pid in payload.target_project_ids if pid})
    if not can_retag(caller, doc) or not can_publish(
        caller, layer=payload.layer, org_id=payload.org_id, project_ids=project_ids
    ):
        raise HTTPException(
            status_code=403,
            detail=error_detail("AUTH_FORBIDDEN", "Caller may not re-tag this document"),
        )
    try:
        validate_layer_targets(
            payload.layer,
            org_id=payload.org_id,
            project_ids=project_ids,
            created_by=doc.created_by,
        )
        project_ids = await validate_project_targets(db, project_ids, org_id=payload.org_id)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=error_detail("DOCUMENT_VALIDATION_ERROR", str(exc))) from exc

    previous_layer = doc.layer
    await documents_repo.replace_targets(
        db,
        doc,
        layer=payload.layer,
        org_id=payload.org_id,
        project_ids=project_ids,
        app_ids=[tag for tag in payload.audience_tags if tag],
    )
    await db.commit()
    await db.refresh(doc)
    logger.info(
        "document_retagged document_id=%s caller_id=%s from_layer=%s to_layer=%s",
        doc.id,
        caller.caller_id,
        previous_layer,
        doc.layer,
    )
    return success_response(request=request, data=_to_response(doc))
