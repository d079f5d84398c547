from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.apps.api.deps import get_caller, get_db, get_llm
from stratarag.apps.api.errors import error_detail
from stratarag.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from stratarag.apps.api.response import SuccessEnvelope, success_response
from stratarag.core.errors import (
    DatabaseError,
    LLMError,
    ProviderConfigError,
    RetrievalError,
    ValidationError,
)
from stratarag.providers.llm.base import LLMProvider
from stratarag.services.access.engine import AccessProfile
from stratarag.services.routing.router import answer


logger = logging.getLogger(__name__)
router = APIRouter(tags=["query"], responses=DEFAULT_ERROR_RESPONSES)


class QueryRequest(BaseModel):
    query: str = Field(min_length=1, max_length=8000)
    project_id: str | None = None
    org_id: str | None = None
    conversation_id: str | None = None
    audience_tag: str | None = None
    generation_mode: Literal["chunks", "full_context"] | None = None

    model_config = {
        "extra": "forbid",
        "json_schema_extra": {
            "examples": [
                {
                    "query": "What are the payment terms in the supplier contract?",
                    "project_id": "proj_abc",
                    "generation_mode": "chunks",
                }
            ]
        },
    }


class QueryResponse(BaseModel):
    answer: str
    sources: list[dict[str, Any]]
    routed_to: str
    generation_mode: str
    reasoning: str


def _map_error(exc: Exception) -> tuple[int, str, str]:
    # Map internal exceptions to stable client-facing codes without leaking stack traces.
    if isinstance(exc, ValidationError):
        return 422, "QUERY_VALIDATION_ERROR", str(exc)
    if isinstance(exc, ProviderConfigError):
        return 503, "LLM_CONFIG_MISSING", str(exc)
    if isinstance(exc, LLMError):
        return 502, "LLM_ERROR", str(exc)
    if isinstance(exc, RetrievalError):
        return 502, "RETRIEVAL_ERROR", str(exc)
    if isinstance(exc, DatabaseError):
        return 500, "DB_ERROR", str(exc)
    return 500, "INTERNAL_ERROR", "Internal server error"


@router.post("/query", response_model=SuccessEnvelope[QueryResponse])
async def query(
    request: Request,
    payload: QueryRequest,
    caller: AccessProfile = Depends(get_caller),
    llm: LLMProvider = Depends(get_llm),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        result = await answer(
            db,
            query=payload.query,
            caller_id=caller.caller_id,
            org_id=payload.org_id,
            project_id=payload.project_id,
            audience_tag=payload.audience_tag,
            generation_mode=payload.generation_mode,
            llm=llm,
        )
    except SQLAlchemyError as exc:
        logger.exception("query_failed caller_id=%s", caller.caller_id, exc_info=exc)
        status_code, code, message = _map_error(DatabaseError("Database error during query"))
        raise HTTPException(status_code=status_code, detail=error_detail(code, message)) from exc
    except (ValidationError, ProviderConfigError, LLMError, RetrievalError) as exc:
        logger.warning("query_failed caller_id=%s error=%s", caller.caller_id, type(exc).__name__)
        status_code, code, message = _map_error(exc)
        raise HTTPException(status_code=status_code, detail=error_detail(code, message)) from exc
    logger.info(
        "query_answered caller_id=%s conversation_id=%s routed_to=%s mode=%s",
        caller.caller_id,
        payload.conversation_id,
        result.routed_to,
        result.generation_mode,
    )
    return success_response(request=request, data=result.to_dict())
