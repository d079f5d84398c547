from __future__ import annotations

import os
import tempfile
from uuid import uuid4

# Settings and the engine are built at import time, so the test environment must exist first.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), f'stratarag-test-{uuid4().hex}.db')}",
)
os.environ.setdefault("INGEST_EXECUTION_MODE", "inline")
os.environ.setdefault("LLM_PROVIDER", "fake")
os.environ.setdefault("INGEST_CALLBACK_SECRET", "callback-secret")
os.environ.setdefault("VECTORIZER_URL", "http://vectorizer.test/webhook/ingest")

from typing import Any, Callable

import httpx
import pytest

from stratarag.domain.models import Base
from stratarag.persistence.db import engine
from stratarag.services.ingest import vectorizer
from stratarag.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Every test starts from empty tables; the engine is disposed so no connection outlives its loop.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    reset_telemetry()
    yield
    await engine.dispose()


class VectorizerStub:
    # Scripted stand-in for the external vectorizing worker.
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._replies: list[Callable[[httpx.Request], httpx.Response]] = []
        self.default: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200, json={"success": True, "total_chunks": 12}
        )

    def reply(self, status_code: int = 200, *, json: Any = None, content: bytes | None = None) -> None:
        if content is not None:
            self._replies.append(lambda request: httpx.Response(status_code, content=content))
        else:
            self._replies.append(lambda request: httpx.Response(status_code, json=json))

    def raise_error(self, exc: Exception) -> None:
        def _raise(request: httpx.Request) -> httpx.Response:
            raise exc

        self._replies.append(_raise)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._replies:
            return self._replies.pop(0)(request)
        return self.default(request)


@pytest.fixture
def vectorizer_stub(monkeypatch) -> VectorizerStub:
    stub = VectorizerStub()
    monkeypatch.setattr(
        vectorizer,
        "_build_client",
        lambda timeout_s: httpx.AsyncClient(transport=httpx.MockTransport(stub.handle), timeout=timeout_s),
    )
    return stub
