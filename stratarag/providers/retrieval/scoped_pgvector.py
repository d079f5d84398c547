from __future__ import annotations

from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.core.config import EMBED_DIM, get_settings
from stratarag.core.errors import RetrievalError
from stratarag.domain.models import Document
from stratarag.ingestion.embeddings import cosine_similarity
from stratarag.services.access.engine import RetrievalScope


class ScopedPgVectorRetriever:
    def __init__(self, session: AsyncSession, embed: Callable[[str], Awaitable[list[float]]]) -> None:
        self._session = session
        self._embed = embed

    def _item(self, doc: Document, score: float) -> dict:
        return {
            "document_id": doc.id,
            "text": doc.content or "",
            "score": max(0.0, min(1.0, score)),
            "source": doc.filename,
            "layer": doc.layer,
            "metadata": doc.metadata_json or {},
        }

    async def retrieve(self, scope: RetrievalScope, query: str, top_k: int) -> list[dict]:
        # Every query runs inside the caller's scope; nothing outside it is ever ranked.
        query_embedding = await self._embed(query)
        if len(query_embedding) != EMBED_DIM:
            # Retrieval must fail fast if the embedding dimension doesn't match the schema.
            raise RetrievalError("query embedding dimension mismatch")
        top_k = max(1, min(int(top_k), 50))
        min_similarity = get_settings().retrieval_min_similarity
        base = select(Document).where(scope.clause(), Document.embedding.is_not(None))

        try:
            if self._session.get_bind().dialect.name == "postgresql":
                # Use cosine distance from pgvector; lower is more similar.
                distance_expr = Document.embedding.cosine_distance(query_embedding)
                stmt = (
                    base.add_columns(distance_expr.label("distance"))
                    # Secondary ordering keeps tie-breaking deterministic.
                    .order_by(distance_expr.asc(), Document.id.asc())
                    .limit(top_k)
                )
                rows = (await self._session.execute(stmt)).all()
                scored = [(doc, 1.0 - float(distance)) for doc, distance in rows]
            else:
                # Non-Postgres engines store embeddings as JSON; rank in process.
                docs = (await self._session.execute(base)).scalars().all()
                scored = [
                    (doc, cosine_similarity(query_embedding, list(doc.embedding)))
                    for doc in docs
                    if doc.embedding and len(doc.embedding) == EMBED_DIM
                ]
                scored.sort(key=lambda pair: (-pair[1], pair[0].id))
                scored = scored[:top_k]
        except SQLAlchemyError as exc:
            raise RetrievalError("scoped vector query failed") from exc
        except ValueError as exc:
            raise RetrievalError(str(exc)) from exc

        return [self._item(doc, score) for doc, score in scored if score >= min_similarity]
