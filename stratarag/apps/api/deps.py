from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.apps.api.errors import error_detail
from stratarag.core.config import get_settings
from stratarag.persistence.db import get_session
from stratarag.providers.llm.base import LLMProvider
from stratarag.providers.llm.factory import get_llm_provider
from stratarag.services.access.engine import AccessProfile, load_access_profile


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_llm() -> LLMProvider:
    # Overridable in tests through app.dependency_overrides.
    return get_llm_provider()


async def get_caller(request: Request, db: AsyncSession = Depends(get_db)) -> AccessProfile:
    # Identity comes from the upstream session layer; unknown ids get no privileges.
    header = get_settings().auth_caller_header
    caller_id = (request.headers.get(header) or "").strip()
    if not caller_id:
        raise HTTPException(
            status_code=401,
            detail=error_detail("AUTH_UNAUTHORIZED", f"Missing {header} header"),
        )
    return await load_access_profile(db, caller_id)


def require_callback_secret(request: Request) -> None:
    # Callbacks are only authenticated when a shared secret is configured.
    expected = get_settings().ingest_callback_secret
    if not expected:
        return
    provided = request.headers.get("X-Ingest-Callback-Secret") or ""
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(
            status_code=401,
            detail=error_detail("AUTH_UNAUTHORIZED", "Invalid callback secret"),
        )
