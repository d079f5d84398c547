from __future__ import annotations

import json

import pytest
from httpx import ASGITransport, AsyncClient

from stratarag.apps.api.deps import get_llm
from stratarag.apps.api.main import create_app
from stratarag.persistence.db import SessionLocal
from stratarag.providers.llm.fake import FakeLLMProvider
from stratarag.tests.utils.seed import seed_document, seed_world


def _headers(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


def _job_body(**overrides) -> dict:
    body = {
        "source_ref": "uploads/org-a/safety.pdf",
        "filename": "Safety Manual.pdf",
        "mime_type": "application/pdf",
        "layer": "org",
        "org_id": "org-a",
    }
    body.update(overrides)
    return body


@pytest.fixture
async def app():
    async with SessionLocal() as session:
        await seed_world(session)
    return create_app()


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_health_is_public_and_enveloped(client) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
    assert response.status_code == 200
    assert response.headers["X-Request-Id"] == "req-123"
    payload = response.json()
    assert payload["data"] == {"status": "ok"}
    assert payload["meta"] == {"request_id": "req-123", "api_version": "v1"}


@pytest.mark.asyncio
async def test_missing_caller_identity_is_unauthorized(client) -> None:
    response = await client.get("/v1/documents")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_submit_dispatches_inline_and_document_becomes_ready(client, vectorizer_stub) -> None:
    response = await client.post("/v1/ingestion/jobs", json=_job_body(), headers=_headers("admin-a"))
    assert response.status_code == 202
    accepted = response.json()["data"]
    assert accepted["status"] == "completed"

    job = await client.get(f"/v1/ingestion/jobs/{accepted['job_id']}", headers=_headers("admin-a"))
    assert job.status_code == 200
    assert job.json()["data"]["chunk_count"] == 12
    assert job.json()["data"]["created_by"] == "admin-a"

    doc = await client.get(f"/v1/documents/{accepted['document_id']}", headers=_headers("member-a"))
    assert doc.status_code == 200
    assert doc.json()["data"]["status"] == "ready"

    hidden = await client.get(f"/v1/documents/{accepted['document_id']}", headers=_headers("member-b"))
    assert hidden.status_code == 404


@pytest.mark.asyncio
async def test_submit_enforces_publish_rules_and_validation(client, vectorizer_stub) -> None:
    forbidden = await client.post("/v1/ingestion/jobs", json=_job_body(), headers=_headers("member-a"))
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "AUTH_FORBIDDEN"

    bad_mime = await client.post(
        "/v1/ingestion/jobs",
        json=_job_body(mime_type="application/x-msdownload"),
        headers=_headers("admin-a"),
    )
    assert bad_mime.status_code == 422
    assert bad_mime.json()["error"]["code"] == "INGEST_VALIDATION_ERROR"

    bad_layer = await client.post("/v1/ingestion/jobs", json=_job_body(layer="galaxy"), headers=_headers("admin-a"))
    assert bad_layer.status_code == 422
    assert bad_layer.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"

    leader = await client.post(
        "/v1/ingestion/jobs",
        json=_job_body(layer="project", project_id="proj-a1"),
        headers=_headers("lead-a"),
    )
    assert leader.status_code == 202
    assert vectorizer_stub.requests


@pytest.mark.asyncio
async def test_submit_cannot_attribute_content_to_another_user(client, vectorizer_stub) -> None:
    planted = await client.post(
        "/v1/ingestion/jobs",
        json=_job_body(layer="user", org_id=None, created_by="member-a"),
        headers=_headers("member-b"),
    )
    assert planted.status_code == 403
    assert planted.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert not vectorizer_stub.requests

    jobs = await client.get("/v1/ingestion/jobs", headers=_headers("root"))
    assert jobs.json()["data"] == []
    listing = await client.get("/v1/documents", headers=_headers("member-a"))
    assert listing.json()["data"] == []

    own = await client.post(
        "/v1/ingestion/jobs", json=_job_body(layer="user", org_id=None), headers=_headers("member-b")
    )
    assert own.status_code == 202
    own_job_id = own.json()["data"]["job_id"]
    job = await client.get(f"/v1/ingestion/jobs/{own_job_id}", headers=_headers("member-b"))
    assert job.json()["data"]["created_by"] == "member-b"
    assert job.json()["data"]["org_id"] == "org-b"

    on_behalf = await client.post(
        "/v1/ingestion/jobs",
        json=_job_body(layer="user", created_by="member-a"),
        headers=_headers("admin-a"),
    )
    assert on_behalf.status_code == 202
    filed_id = on_behalf.json()["data"]["document_id"]
    filed = await client.get(f"/v1/documents/{filed_id}", headers=_headers("member-a"))
    assert filed.status_code == 200
    assert filed.json()["data"]["created_by"] == "member-a"


@pytest.mark.asyncio
async def test_callback_completes_acknowledged_job(client, vectorizer_stub) -> None:
    vectorizer_stub.reply(202, json={"status": "accepted"})
    submitted = await client.post("/v1/ingestion/jobs", json=_job_body(), headers=_headers("admin-a"))
    job_id = submitted.json()["data"]["job_id"]
    assert submitted.json()["data"]["status"] == "sent"

    body = {"job_id": job_id, "success": True, "chunks_count": 9}
    rejected = await client.post(
        "/v1/ingestion/callback", json=body, headers={"X-Ingest-Callback-Secret": "wrong"}
    )
    assert rejected.status_code == 401

    secret = {"X-Ingest-Callback-Secret": "callback-secret"}
    done = await client.post("/v1/ingestion/callback", json=body, headers=secret)
    assert done.status_code == 200
    assert done.json()["data"]["applied"] is True
    assert done.json()["data"]["status"] == "completed"
    assert done.json()["data"]["chunk_count"] == 9

    duplicate = await client.post(
        "/v1/ingestion/callback",
        json={"job_id": job_id, "success": False, "error_message": "late"},
        headers=secret,
    )
    assert duplicate.status_code == 200
    assert duplicate.json()["data"]["applied"] is False
    assert duplicate.json()["data"]["status"] == "completed"

    missing = await client.post(
        "/v1/ingestion/callback", json={"job_id": "nope", "success": True}, headers=secret
    )
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_job_listing_is_scoped_to_operators(client, vectorizer_stub) -> None:
    await client.post("/v1/ingestion/jobs", json=_job_body(), headers=_headers("admin-a"))
    await client.post(
        "/v1/ingestion/jobs",
        json=_job_body(org_id="org-b", source_ref="uploads/org-b/x.pdf"),
        headers=_headers("admin-b"),
    )

    assert (await client.get("/v1/ingestion/jobs", headers=_headers("member-a"))).status_code == 403
    own = await client.get("/v1/ingestion/jobs", headers=_headers("admin-a"))
    assert own.status_code == 200
    assert {item["org_id"] for item in own.json()["data"]} == {"org-a"}
    cross = await client.get("/v1/ingestion/jobs", params={"org_id": "org-b"}, headers=_headers("admin-a"))
    assert cross.status_code == 403
    everything = await client.get("/v1/ingestion/jobs", headers=_headers("root"))
    assert {item["org_id"] for item in everything.json()["data"]} == {"org-a", "org-b"}

    assert (await client.post("/v1/ingestion/dispatch", headers=_headers("admin-a"))).status_code == 403
    drained = await client.post("/v1/ingestion/dispatch", headers=_headers("root"))
    assert drained.status_code == 200
    assert drained.json()["data"]["handled"] == 0


@pytest.mark.asyncio
async def test_document_retagging(client) -> None:
    async with SessionLocal() as session:
        note = await seed_document(
            session, layer="user", org_id="org-a", created_by="lead-a", content="site visit notes"
        )
        await session.commit()

    stranger = await client.patch(
        f"/v1/documents/{note.id}/layer",
        json={"layer": "org", "org_id": "org-a"},
        headers=_headers("member-a"),
    )
    assert stranger.status_code == 404

    # Leaders may move their own notes into the project they lead, but not org-wide.
    org_wide = await client.patch(
        f"/v1/documents/{note.id}/layer",
        json={"layer": "org", "org_id": "org-a"},
        headers=_headers("lead-a"),
    )
    assert org_wide.status_code == 403

    moved = await client.patch(
        f"/v1/documents/{note.id}/layer",
        json={"layer": "project", "org_id": "org-a", "target_project_ids": ["proj-a1"]},
        headers=_headers("lead-a"),
    )
    assert moved.status_code == 200
    assert moved.json()["data"]["layer"] == "project"
    assert moved.json()["data"]["target_project_ids"] == ["proj-a1"]

    visible = await client.get(f"/v1/documents/{note.id}", headers=_headers("member-a"))
    assert visible.status_code == 200
    listing = await client.get("/v1/documents", headers=_headers("solo-a"))
    assert note.id not in {item["id"] for item in listing.json()["data"]}

    invalid = await client.patch(
        f"/v1/documents/{note.id}/layer",
        json={"layer": "project", "org_id": "org-a", "target_project_ids": ["proj-b1"]},
        headers=_headers("root"),
    )
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_profile_visibility_and_updates(client) -> None:
    coworker = await client.get("/v1/profiles/lead-a", headers=_headers("member-a"))
    assert coworker.status_code == 200
    assert coworker.json()["data"]["org_id"] == "org-a"

    assert (await client.get("/v1/profiles/solo-a", headers=_headers("member-a"))).status_code == 404
    assert (
        await client.patch("/v1/profiles/lead-a", json={"display_name": "Boss"}, headers=_headers("member-a"))
    ).status_code == 403

    renamed = await client.patch(
        "/v1/profiles/member-a", json={"display_name": "Member A"}, headers=_headers("member-a")
    )
    assert renamed.status_code == 200
    assert renamed.json()["data"]["display_name"] == "Member A"

    escalation = await client.patch(
        "/v1/profiles/member-a", json={"app_role": "super_admin"}, headers=_headers("admin-a")
    )
    assert escalation.status_code == 403
    promoted = await client.patch(
        "/v1/profiles/member-a", json={"app_role": "org_admin"}, headers=_headers("root")
    )
    assert promoted.status_code == 200
    assert promoted.json()["data"]["app_role"] == "org_admin"


@pytest.mark.asyncio
async def test_query_routes_and_answers(app, client) -> None:
    async with SessionLocal() as session:
        await seed_document(
            session,
            layer="org",
            org_id="org-a",
            content="ladder safety inspection every quarter",
            filename="ladders.pdf",
        )
        await session.commit()
    decision = json.dumps({"destination": "librarian", "generation_mode": "chunks", "reasoning": "lookup"})
    llm = FakeLLMProvider("Inspect ladders quarterly [1].", script=[decision])
    app.dependency_overrides[get_llm] = lambda: llm

    response = await client.post(
        "/v1/query",
        json={"query": "ladder safety inspection", "generation_mode": "full_context"},
        headers=_headers("member-a"),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["answer"] == "Inspect ladders quarterly [1]."
    assert data["routed_to"] == "librarian"
    assert data["generation_mode"] == "full_context"
    assert "overridden by caller" in data["reasoning"]
    assert [item["source"] for item in data["sources"]] == ["ladders.pdf"]

    invalid = await client.post(
        "/v1/query",
        json={"query": "x", "generation_mode": "everything"},
        headers=_headers("member-a"),
    )
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_ops_ingestion_health_requires_operator(client) -> None:
    assert (await client.get("/v1/ops/ingestion", headers=_headers("member-a"))).status_code == 403
    response = await client.get("/v1/ops/ingestion", headers=_headers("admin-a"))
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["execution_mode"] == "inline"
    assert data["queue_depth"] == 0
    assert data["status"] == "ok"


@pytest.mark.asyncio
async def test_openapi_documents_caller_and_callback_auth(client) -> None:
    response = await client.get("/v1/openapi.json")
    assert response.status_code == 200
    schema = response.json()
    schemes = schema["components"]["securitySchemes"]
    assert schemes["CallerId"]["name"] == "X-User-Id"
    assert schema["paths"]["/v1/ingestion/callback"]["post"]["security"] == [{"CallbackSecret": []}]
    assert schema["paths"]["/v1/query"]["post"]["security"] == [{"CallerId": []}]
    assert "security" not in schema["paths"]["/v1/health"]["get"]


@pytest.mark.asyncio
async def test_ingested_document_is_retrievable_once_completed(app, client, vectorizer_stub) -> None:
    vectorizer_stub.reply(
        200, json={"success": True, "total_chunks": 3, "content": "ladder safety inspection every quarter"}
    )
    submitted = await client.post("/v1/ingestion/jobs", json=_job_body(), headers=_headers("admin-a"))
    assert submitted.json()["data"]["status"] == "completed"
    document_id = submitted.json()["data"]["document_id"]

    decision = json.dumps({"destination": "librarian", "generation_mode": "chunks", "reasoning": "lookup"})
    app.dependency_overrides[get_llm] = lambda: FakeLLMProvider("Inspect ladders quarterly [1].", script=[decision])

    response = await client.post(
        "/v1/query", json={"query": "ladder safety inspection"}, headers=_headers("member-a")
    )
    assert response.status_code == 200
    assert document_id in [item["document_id"] for item in response.json()["data"]["sources"]]

    outsider = await client.post(
        "/v1/query", json={"query": "ladder safety inspection"}, headers=_headers("member-b")
    )
    assert document_id not in [item["document_id"] for item in outsider.json()["data"]["sources"]]


@pytest.mark.asyncio
async def test_callback_content_makes_document_retrievable(app, client, vectorizer_stub) -> None:
    vectorizer_stub.reply(202, json={"status": "accepted"})
    submitted = await client.post("/v1/ingestion/jobs", json=_job_body(), headers=_headers("admin-a"))
    job_id = submitted.json()["data"]["job_id"]
    document_id = submitted.json()["data"]["document_id"]

    done = await client.post(
        "/v1/ingestion/callback",
        json={
            "job_id": job_id,
            "success": True,
            "chunks_count": 2,
            "chunks": ["Forklift certification renews yearly.", {"text": "Forklift drivers wear vests."}],
        },
        headers={"X-Ingest-Callback-Secret": "callback-secret"},
    )
    assert done.json()["data"]["status"] == "completed"

    decision = json.dumps({"destination": "librarian", "generation_mode": "chunks", "reasoning": "lookup"})
    app.dependency_overrides[get_llm] = lambda: FakeLLMProvider("Yearly [1].", script=[decision])
    response = await client.post(
        "/v1/query", json={"query": "forklift certification"}, headers=_headers("member-a")
    )
    assert document_id in [item["document_id"] for item in response.json()["data"]["sources"]]
