from __future__ import annotations

import pytest

from stratarag.core.config import EMBED_DIM
from stratarag.core.errors import RetrievalError, ValidationError
from stratarag.ingestion.embeddings import cosine_similarity, embed_text
from stratarag.persistence.db import SessionLocal
from stratarag.persistence.repos import projects as projects_repo
from stratarag.providers.retrieval.scoped_pgvector import ScopedPgVectorRetriever
from stratarag.services.access.engine import build_retrieval_scope, load_access_profile
from stratarag.tests.utils.seed import seed_document, seed_world


async def _embed(text: str) -> list[float]:
    return embed_text(text)


def test_embeddings_are_deterministic_and_normalized() -> None:
    first = embed_text("Roof inspection checklist")
    assert first == embed_text("roof inspection checklist")
    assert len(first) == EMBED_DIM
    assert cosine_similarity(first, first) == pytest.approx(1.0)
    assert embed_text("") == [0.0] * EMBED_DIM
    assert embed_text("Évaluation thermique") == embed_text("evaluation thermique")
    assert cosine_similarity(first, embed_text("checklist for roof inspection")) > 0.5


@pytest.mark.asyncio
async def test_retriever_ranks_only_in_scope_documents() -> None:
    async with SessionLocal() as session:
        await seed_world(session)
        best = await seed_document(
            session, layer="org", org_id="org-a", content="roof inspection checklist annual", filename="roof.pdf"
        )
        await seed_document(session, layer="org", org_id="org-a", content="payroll calendar holidays")
        foreign = await seed_document(session, layer="org", org_id="org-b", content="roof inspection checklist annual")
        draft = await seed_document(
            session, layer="org", org_id="org-a", content="roof inspection checklist annual", status="processing"
        )
        await session.commit()

        profile = await load_access_profile(session, "member-a")
        retriever = ScopedPgVectorRetriever(session, _embed)
        results = await retriever.retrieve(build_retrieval_scope(profile), "roof inspection checklist", 5)

    ids = [item["document_id"] for item in results]
    assert ids[0] == best.id
    assert foreign.id not in ids
    assert draft.id not in ids
    assert results[0]["source"] == "roof.pdf"
    assert results[0]["layer"] == "org"
    assert 0.0 <= results[0]["score"] <= 1.0


@pytest.mark.asyncio
async def test_retriever_rejects_wrong_dimension_query() -> None:
    async def short_embed(text: str) -> list[float]:
        return [0.1, 0.2]

    async with SessionLocal() as session:
        profile = await load_access_profile(session, None)
        retriever = ScopedPgVectorRetriever(session, short_embed)
        with pytest.raises(RetrievalError):
            await retriever.retrieve(build_retrieval_scope(profile), "anything", 3)


@pytest.mark.asyncio
async def test_project_members_must_belong_to_the_org() -> None:
    async with SessionLocal() as session:
        await seed_world(session)
        member = await projects_repo.add_project_member(session, project_id="proj-a2", user_id="member-a")
        assert member.role == "member"
        with pytest.raises(ValidationError):
            await projects_repo.add_project_member(session, project_id="proj-a2", user_id="member-b")
        with pytest.raises(ValidationError):
            await projects_repo.add_project_member(session, project_id="proj-a2", user_id="lead-a", role="owner")
        with pytest.raises(ValidationError):
            await projects_repo.add_project_member(session, project_id="proj-zz", user_id="lead-a")
