from __future__ import annotations

import pytest
from sqlalchemy import select

from stratarag.domain.models import Document, Profile
from stratarag.persistence.db import SessionLocal
from stratarag.services.access.engine import (
    AccessProfile,
    anonymous_profile,
    build_retrieval_scope,
    can_attribute,
    can_publish,
    can_retag,
    can_update_profile,
    can_view,
    can_view_profile,
    coworker_ids_of,
    is_org_admin,
    is_super_admin,
    leader_project_ids_of,
    load_access_profile,
    org_of,
    project_ids_of,
    visibility_clause,
)
from stratarag.tests.utils.seed import seed_document, seed_world


async def _visible_ids(caller_id: str | None) -> set[str]:
    async with SessionLocal() as session:
        profile = await load_access_profile(session, caller_id)
        result = await session.execute(select(Document.id).where(visibility_clause(profile)))
        return set(result.scalars().all())


async def _seed_layered_docs() -> dict[str, str]:
    async with SessionLocal() as session:
        await seed_world(session)
        docs = {
            "app": await seed_document(session, layer="app", content="platform guide"),
            "org_a": await seed_document(session, layer="org", org_id="org-a", content="org a policy"),
            "org_b": await seed_document(session, layer="org", org_id="org-b", content="org b policy"),
            "proj_a1": await seed_document(
                session, layer="project", org_id="org-a", project_ids=["proj-a1"], content="a1 drawings"
            ),
            "proj_a2": await seed_document(
                session, layer="project", org_id="org-a", project_ids=["proj-a2"], content="a2 drawings"
            ),
            "user_member_a": await seed_document(
                session, layer="user", org_id="org-a", created_by="member-a", content="my notes"
            ),
        }
        await session.commit()
        return {key: doc.id for key, doc in docs.items()}


@pytest.mark.asyncio
async def test_role_lookups_reflect_memberships() -> None:
    async with SessionLocal() as session:
        await seed_world(session)
        assert await is_super_admin(session, "root") is True
        assert await is_super_admin(session, "admin-a") is False
        assert await is_org_admin(session, "admin-a") is True
        assert await is_org_admin(session, "member-a") is False
        assert await org_of(session, "member-a") == "org-a"
        assert await project_ids_of(session, "member-a") == frozenset({"proj-a1"})
        assert await leader_project_ids_of(session, "lead-a") == frozenset({"proj-a1"})
        assert await leader_project_ids_of(session, "member-a") == frozenset()
        assert await coworker_ids_of(session, "member-a") == frozenset({"lead-a"})
        assert await coworker_ids_of(session, "solo-a") == frozenset()


@pytest.mark.asyncio
async def test_unknown_callers_have_no_privileges() -> None:
    async with SessionLocal() as session:
        await seed_world(session)
        profile = await load_access_profile(session, "ghost")
    assert profile.known is False
    assert profile.is_super_admin is False
    assert profile.is_org_admin is False
    assert profile.project_ids == frozenset()


@pytest.mark.asyncio
async def test_layer_visibility_matrix() -> None:
    ids = await _seed_layered_docs()

    # Members see the shared layer, their org, their projects and their own notes.
    assert await _visible_ids("member-a") == {ids["app"], ids["org_a"], ids["proj_a1"], ids["user_member_a"]}
    # Project isolation: same org, different project.
    assert await _visible_ids("solo-a") == {ids["app"], ids["org_a"], ids["proj_a2"]}
    # Org isolation holds in both directions.
    assert await _visible_ids("member-b") == {ids["app"], ids["org_b"]}
    # Org admins see everything owned by their org, including private user notes.
    assert await _visible_ids("admin-a") == {
        ids["app"],
        ids["org_a"],
        ids["proj_a1"],
        ids["proj_a2"],
        ids["user_member_a"],
    }
    assert await _visible_ids("root") == set(ids.values())
    assert await _visible_ids("ghost") == set()
    assert await _visible_ids(None) == set()


@pytest.mark.asyncio
async def test_can_view_matches_visibility_clause() -> None:
    await _seed_layered_docs()
    async with SessionLocal() as session:
        docs = (await session.execute(select(Document))).scalars().all()
        for caller_id in ("root", "admin-a", "lead-a", "member-a", "solo-a", "admin-b", "member-b", "ghost"):
            profile = await load_access_profile(session, caller_id)
            in_memory = {doc.id for doc in docs if can_view(profile, doc)}
            assert in_memory == await _visible_ids(caller_id), caller_id


@pytest.mark.asyncio
async def test_admin_grants_are_monotonic() -> None:
    # Promoting a member to org admin never removes access it already had.
    await _seed_layered_docs()
    before = await _visible_ids("member-a")
    async with SessionLocal() as session:
        profile = await session.get(Profile, "member-a")
        profile.app_role = "org_admin"
        await session.commit()
    after = await _visible_ids("member-a")
    assert before <= after
    assert len(after) > len(before)


def _profile(**kwargs) -> AccessProfile:
    defaults = {"caller_id": "u1", "known": True, "app_role": "user", "org_id": "org-a"}
    defaults.update(kwargs)
    return AccessProfile(**defaults)


def test_publish_rules() -> None:
    super_admin = _profile(app_role="super_admin", org_id=None)
    org_admin = _profile(org_role="owner")
    leader = _profile(project_ids=frozenset({"p1"}), leader_project_ids=frozenset({"p1"}))
    member = _profile(project_ids=frozenset({"p1"}))

    assert can_publish(super_admin, layer="app", org_id=None) is True
    assert can_publish(org_admin, layer="app", org_id=None) is False
    assert can_publish(org_admin, layer="org", org_id="org-a") is True
    assert can_publish(org_admin, layer="org", org_id="org-b") is False
    assert can_publish(leader, layer="project", org_id="org-a", project_ids=["p1"]) is True
    assert can_publish(leader, layer="project", org_id="org-a", project_ids=["p1", "p2"]) is False
    assert can_publish(member, layer="project", org_id="org-a", project_ids=["p1"]) is False
    assert can_publish(member, layer="org", org_id="org-a") is False
    assert can_publish(member, layer="user", org_id="org-a") is True
    assert can_publish(anonymous_profile("ghost"), layer="user", org_id=None) is False


def test_only_operators_submit_on_behalf_of_others() -> None:
    super_admin = _profile(caller_id="root", app_role="super_admin", org_id=None)
    org_admin = _profile(caller_id="admin", org_role="owner")
    member = _profile(caller_id="member-b", org_id="org-b")

    assert can_attribute(member, created_by=None, org_id="org-b") is True
    assert can_attribute(member, created_by="member-b", org_id="org-b") is True
    assert can_attribute(member, created_by="member-a", org_id="org-b") is False
    assert can_attribute(member, created_by="member-a", org_id=None) is False
    assert can_attribute(org_admin, created_by="member-a", org_id="org-a") is True
    assert can_attribute(org_admin, created_by="member-a", org_id="org-b") is False
    assert can_attribute(org_admin, created_by="member-a", org_id=None) is False
    assert can_attribute(super_admin, created_by="member-a", org_id=None) is True
    assert can_attribute(anonymous_profile("ghost"), created_by=None, org_id=None) is False


def test_profile_rules() -> None:
    viewer = _profile(caller_id="u1", coworker_ids=frozenset({"u2"}))
    coworker = Profile(id="u2", org_id="org-a")
    stranger = Profile(id="u3", org_id="org-a")
    foreign = Profile(id="u4", org_id="org-b")
    org_admin = _profile(caller_id="admin", org_role="admin")

    assert can_view_profile(viewer, Profile(id="u1", org_id="org-a")) is True
    assert can_view_profile(viewer, coworker) is True
    assert can_update_profile(viewer, coworker) is False
    assert can_view_profile(viewer, stranger) is False
    assert can_view_profile(org_admin, stranger) is True
    assert can_update_profile(org_admin, stranger) is True
    assert can_view_profile(org_admin, foreign) is False
    assert can_view_profile(anonymous_profile("ghost"), stranger) is False


def test_retag_rules() -> None:
    doc = Document(id="d1", layer="user", org_id="org-a", created_by="u1", status="ready", targets=[])
    assert can_retag(_profile(caller_id="u1"), doc) is True
    assert can_retag(_profile(caller_id="u2"), doc) is False
    assert can_retag(_profile(caller_id="admin", org_role="owner"), doc) is True
    assert can_retag(_profile(caller_id="admin", org_id="org-b", org_role="owner"), doc) is False


@pytest.mark.asyncio
async def test_retrieval_scope_focus_and_audience() -> None:
    async with SessionLocal() as session:
        await seed_world(session)
        shared = await seed_document(session, layer="app", content="shared guide")
        tagged_here = await seed_document(session, layer="app", audience_tags=["builders"], content="builders guide")
        tagged_elsewhere = await seed_document(session, layer="app", audience_tags=["lawyers"], content="law guide")
        org_doc = await seed_document(session, layer="org", org_id="org-a", content="org handbook")
        pending = await seed_document(session, layer="org", org_id="org-a", content="draft", status="pending")
        await session.commit()

        profile = await load_access_profile(session, "admin-a")
        scope = build_retrieval_scope(profile, project_id="proj-a1", audience_tag="builders")
        result = await session.execute(select(Document).where(scope.clause()))
        in_scope = {doc.id for doc in result.scalars().all()}

        assert in_scope == {shared.id, tagged_here.id, org_doc.id}
        assert tagged_elsewhere.id not in in_scope
        assert pending.id not in in_scope
        all_docs = (await session.execute(select(Document))).scalars().all()
        assert {doc.id for doc in all_docs if scope.allows(doc)} == in_scope


@pytest.mark.asyncio
async def test_project_focus_narrows_project_layer_only() -> None:
    ids = await _seed_layered_docs()
    async with SessionLocal() as session:
        profile = await load_access_profile(session, "admin-a")
        scope = build_retrieval_scope(profile, project_id="proj-a2")
        result = await session.execute(select(Document.id).where(scope.clause()))
        in_scope = set(result.scalars().all())
    assert ids["proj_a2"] in in_scope
    assert ids["proj_a1"] not in in_scope
    assert {ids["app"], ids["org_a"], ids["user_member_a"]} <= in_scope
