from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import ColumnElement, select
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.domain.models import Document, DocumentTarget


def _target_rows(
    document_id: str,
    *,
    project_ids: Iterable[str],
    app_ids: Iterable[str],
) -> list[DocumentTarget]:
    # Deduplicate targets so composite keys never collide on insert.
    rows = [
        DocumentTarget(document_id=document_id, kind="project", target_id=project_id)
        for project_id in sorted(set(project_ids))
    ]
    rows.extend(
        DocumentTarget(document_id=document_id, kind="app", target_id=app_id)
        for app_id in sorted(set(app_ids))
    )
    return rows


async def create_document(
    session: AsyncSession,
    *,
    document_id: str,
    org_id: str | None,
    layer: str,
    created_by: str | None,
    source_ref: str,
    filename: str,
    mime_type: str,
    project_ids: Iterable[str],
    app_ids: Iterable[str],
    metadata_json: dict[str, Any] | None,
) -> Document:
    # New documents start pending and stay out of retrieval until their job completes.
    doc = Document(
        id=document_id,
        org_id=org_id,
        layer=layer,
        created_by=created_by,
        source_ref=source_ref,
        filename=filename,
        mime_type=mime_type,
        status="pending",
        chunk_count=0,
        metadata_json=metadata_json or {},
        targets=_target_rows(document_id, project_ids=project_ids, app_ids=app_ids),
    )
    session.add(doc)
    return doc


async def get_document_by_id(session: AsyncSession, document_id: str) -> Document | None:
    # Use with care; visibility checks must be enforced by callers.
    result = await session.execute(select(Document).where(Document.id == document_id))
    return result.scalar_one_or_none()


async def list_documents(
    session: AsyncSession,
    *,
    scope: ColumnElement[bool],
    status: str | None = None,
    limit: int = 100,
) -> list[Document]:
    # The scope clause carries the caller's visibility rules.
    stmt = select(Document).where(scope)
    if status:
        stmt = stmt.where(Document.status == status)
    stmt = stmt.order_by(Document.created_at.desc(), Document.id).limit(max(1, min(limit, 500)))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def replace_targets(
    session: AsyncSession,
    doc: Document,
    *,
    layer: str,
    org_id: str | None,
    project_ids: Iterable[str],
    app_ids: Iterable[str],
) -> Document:
    # Re-tagging rewrites layer metadata only; status and embedding stay with the arbiter.
    # Flush the orphan deletes before inserting rows that may reuse the same keys.
    doc.targets.clear()
    await session.flush()
    doc.layer = layer
    doc.org_id = org_id
    doc.targets.extend(_target_rows(doc.id, project_ids=project_ids, app_ids=app_ids))
    await session.flush()
    return doc
