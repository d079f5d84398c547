from __future__ import annotations

from typing import Protocol

from stratarag.services.access.engine import RetrievalScope


class RetrievalProvider(Protocol):
    async def retrieve(self, scope: RetrievalScope, query: str, top_k: int) -> list[dict]:
        ...
