from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from stratarag.core.config import Settings, get_settings


def _engine_options(settings: Settings) -> dict[str, Any]:
    if settings.database_url.startswith("sqlite"):
        # One writer at a time: concurrent claimers wait on the file lock rather than erroring.
        return {"connect_args": {"timeout": 30}}
    options: dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": max(1, settings.api_db_pool_size),
        "max_overflow": max(0, settings.api_db_max_overflow),
        "pool_recycle": 1800,
    }
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(settings.api_db_statement_timeout_ms)}
        }
    return options


def build_engine(settings: Settings) -> AsyncEngine:
    return create_async_engine(settings.database_url, **_engine_options(settings))


engine = build_engine(get_settings())
# Rows stay readable after commit; dispatchers hand claimed jobs across sessions.
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
