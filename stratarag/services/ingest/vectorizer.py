from __future__ import annotations

import logging
import re
import time
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from stratarag.core.config import get_settings
from stratarag.core.errors import TransportError, WorkerApplicationError
from stratarag.domain.models import IngestionJob
from stratarag.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VectorizerReply:
    # acknowledged=True means the worker accepted the job and will call back later.
    acknowledged: bool
    chunk_count: int
    response: dict[str, Any]
    # Extracted text of the processed source, when the worker returns it inline.
    content: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def clean_filename(title: str | None, filename: str) -> str:
    # Slug derived from the title (or filename) keeping the original extension.
    source = title or filename
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    normalized = unicodedata.normalize("NFD", source.lower())
    stripped = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    slug = re.sub(r"[^a-z0-9]+", "_", stripped).strip("_")[:100]
    return f"{slug}.{ext}" if ext else slug


def build_vectorizer_payload(job: IngestionJob) -> dict[str, Any]:
    # Snapshot everything the worker needs; it never reads our database.
    settings = get_settings()
    stored = job.payload_json if isinstance(job.payload_json, dict) else {}
    metadata = dict(stored.get("metadata") or {})
    filename = str(stored.get("filename") or "")
    title = metadata.get("document_title") or metadata.get("title")
    filename_clean = metadata.get("filename_clean") or clean_filename(title, filename)
    metadata.update(
        {
            "source_file_id": job.document_id,
            "mime_type": stored.get("mime_type"),
            "layer": job.layer,
            "quality_level": metadata.get("quality_level") or "standard",
            "filename_clean": filename_clean,
            "job_id": job.id,
            "triggered_at": _utc_now().isoformat(),
        }
    )
    return {
        "job_id": job.id,
        "user_id": job.created_by,
        "org_id": job.org_id,
        "source_file_id": job.document_id,
        "source_ref": job.source_ref,
        "filename": filename,
        "path": stored.get("path") or job.source_ref,
        "storage_bucket": stored.get("storage_bucket") or settings.storage_bucket,
        "layer": job.layer,
        "target_projects": list(stored.get("target_projects") or []) or None,
        "target_apps": list(stored.get("target_apps") or []) or None,
        "metadata": metadata,
    }


def _build_client(timeout_s: float) -> httpx.AsyncClient:
    # Tests swap this out for a MockTransport-backed client.
    return httpx.AsyncClient(timeout=timeout_s)


def _response_json(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def _chunk_count(payload: dict[str, Any]) -> int:
    raw = payload.get("total_chunks")
    if raw is None:
        inserted = payload.get("inserted")
        if isinstance(inserted, dict):
            raw = inserted.get("rag_documents")
    try:
        return max(0, int(raw or 0))
    except (TypeError, ValueError):
        return 0


def reply_content(payload: dict[str, Any]) -> str | None:
    content = payload.get("content")
    if isinstance(content, str) and content.strip():
        return content
    chunks = payload.get("chunks")
    if not isinstance(chunks, list):
        return None
    texts = []
    for chunk in chunks:
        if isinstance(chunk, dict):
            chunk = chunk.get("text") or chunk.get("content")
        if isinstance(chunk, str) and chunk.strip():
            texts.append(chunk.strip())
    return "\n\n".join(texts) or None


def interpret_reply(payload: dict[str, Any]) -> VectorizerReply:
    # A missing success flag means "accepted, completion arrives by callback".
    if "success" not in payload:
        return VectorizerReply(acknowledged=True, chunk_count=0, response=payload)
    flag = payload.get("success")
    if flag is True:
        return VectorizerReply(
            acknowledged=False,
            chunk_count=_chunk_count(payload),
            response=payload,
            content=reply_content(payload),
        )
    if flag is False:
        message = payload.get("error") or payload.get("message") or "Vectorizer processing failed"
        raise WorkerApplicationError(str(message), response=payload)
    raise TransportError(f"Vectorizer returned an unrecognized success flag: {flag!r}", response=payload)


async def send_to_vectorizer(payload: dict[str, Any]) -> VectorizerReply:
    # Raises TransportError or WorkerApplicationError; both enter the retry path.
    settings = get_settings()
    headers = {"Content-Type": "application/json"}
    if settings.vectorizer_secret:
        headers["X-Vectorizer-Secret"] = settings.vectorizer_secret
    timeout_s = max(0.2, settings.vectorizer_timeout_ms / 1000.0)
    started = time.monotonic()
    success = False
    try:
        async with _build_client(timeout_s) as client:
            response = await client.post(settings.vectorizer_url, json=payload, headers=headers)
        body = _response_json(response)
        if response.status_code >= 400:
            raise TransportError(
                f"Vectorizer responded with {response.status_code}",
                response=body or {"status_code": response.status_code},
            )
        reply = interpret_reply(body)
        success = True
        return reply
    except httpx.TimeoutException as exc:
        increment_counter("vectorizer_timeouts_total")
        raise TransportError("Vectorizer call timed out") from exc
    except httpx.HTTPError as exc:
        raise TransportError(f"Vectorizer unreachable: {type(exc).__name__}") from exc
    finally:
        record_external_call(
            integration="vectorizer",
            latency_ms=(time.monotonic() - started) * 1000.0,
            success=success,
        )
