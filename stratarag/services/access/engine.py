from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import ColumnElement, and_, exists, false, not_, or_, select, true
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.domain.models import Document, DocumentTarget, Profile, Project
from stratarag.persistence.repos import access as access_repo


logger = logging.getLogger(__name__)

_ORG_ADMIN_MEMBERSHIP_ROLES = frozenset({"owner", "admin"})


@dataclass(frozen=True)
class AccessProfile:
    # Elevated-read snapshot of a caller's roles; predicates never query the rows they protect.
    caller_id: str | None
    known: bool = False
    app_role: str | None = None
    org_id: str | None = None
    org_role: str | None = None
    project_ids: frozenset[str] = field(default_factory=frozenset)
    leader_project_ids: frozenset[str] = field(default_factory=frozenset)
    coworker_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_super_admin(self) -> bool:
        return self.known and self.app_role == "super_admin"

    @property
    def is_org_admin(self) -> bool:
        if not self.known or self.org_id is None:
            return False
        return self.app_role == "org_admin" or self.org_role in _ORG_ADMIN_MEMBERSHIP_ROLES


def anonymous_profile(caller_id: str | None = None) -> AccessProfile:
    # Unknown callers carry no privileges at all.
    return AccessProfile(caller_id=caller_id, known=False)


async def load_access_profile(session: AsyncSession, caller_id: str | None) -> AccessProfile:
    if not caller_id:
        return anonymous_profile()
    profile = await access_repo.get_profile(session, caller_id)
    if profile is None:
        logger.info("access_profile_unknown caller_id=%s", caller_id)
        return anonymous_profile(caller_id)
    org_role = None
    if profile.org_id is not None:
        membership = await access_repo.get_active_membership(session, user_id=caller_id, org_id=profile.org_id)
        org_role = membership.role if membership is not None else None
    project_roles = await access_repo.list_project_roles(session, caller_id)
    project_ids = frozenset(project_roles)
    coworkers = await access_repo.list_coworker_ids(session, user_id=caller_id, project_ids=set(project_ids))
    return AccessProfile(
        caller_id=caller_id,
        known=True,
        app_role=profile.app_role,
        org_id=profile.org_id,
        org_role=org_role,
        project_ids=project_ids,
        leader_project_ids=frozenset(pid for pid, role in project_roles.items() if role == "leader"),
        coworker_ids=frozenset(coworkers),
    )


async def is_super_admin(session: AsyncSession, caller_id: str | None) -> bool:
    return (await load_access_profile(session, caller_id)).is_super_admin


async def is_org_admin(session: AsyncSession, caller_id: str | None) -> bool:
    return (await load_access_profile(session, caller_id)).is_org_admin


async def org_of(session: AsyncSession, caller_id: str | None) -> str | None:
    return (await load_access_profile(session, caller_id)).org_id


async def project_ids_of(session: AsyncSession, caller_id: str | None) -> frozenset[str]:
    return (await load_access_profile(session, caller_id)).project_ids


async def leader_project_ids_of(session: AsyncSession, caller_id: str | None) -> frozenset[str]:
    return (await load_access_profile(session, caller_id)).leader_project_ids


async def coworker_ids_of(session: AsyncSession, caller_id: str | None) -> frozenset[str]:
    return (await load_access_profile(session, caller_id)).coworker_ids


def can_view(profile: AccessProfile, document: Document) -> bool:
    # Admin overrides come first so jurisdiction wins over tagging.
    if profile.is_super_admin:
        return True
    if not profile.known:
        return False
    if profile.is_org_admin and document.org_id is not None and profile.org_id == document.org_id:
        return True
    if document.layer == "app":
        return True
    if document.layer == "org":
        return document.org_id is not None and profile.org_id == document.org_id
    if document.layer == "project":
        return bool(document.target_project_ids & profile.project_ids)
    if document.layer == "user":
        return document.created_by is not None and document.created_by == profile.caller_id
    return False


def _targets_any(kind: str, target_ids: Iterable[str]) -> ColumnElement[bool]:
    ids = sorted(set(target_ids))
    if not ids:
        return false()
    return exists(
        select(DocumentTarget.document_id).where(
            DocumentTarget.document_id == Document.id,
            DocumentTarget.kind == kind,
            DocumentTarget.target_id.in_(ids),
        )
    )


def _has_targets(kind: str) -> ColumnElement[bool]:
    return exists(
        select(DocumentTarget.document_id).where(
            DocumentTarget.document_id == Document.id,
            DocumentTarget.kind == kind,
        )
    )


def visibility_clause(profile: AccessProfile) -> ColumnElement[bool]:
    # SQL twin of can_view so listings filter in the database.
    if profile.is_super_admin:
        return true()
    if not profile.known:
        return false()
    clauses: list[ColumnElement[bool]] = [Document.layer == "app"]
    if profile.org_id is not None:
        if profile.is_org_admin:
            clauses.append(Document.org_id == profile.org_id)
        clauses.append(and_(Document.layer == "org", Document.org_id == profile.org_id))
    if profile.project_ids:
        clauses.append(and_(Document.layer == "project", _targets_any("project", profile.project_ids)))
    if profile.caller_id:
        clauses.append(and_(Document.layer == "user", Document.created_by == profile.caller_id))
    return or_(*clauses)


def can_view_profile(viewer: AccessProfile, subject: Profile) -> bool:
    if viewer.is_super_admin:
        return True
    if not viewer.known:
        return False
    if subject.id == viewer.caller_id:
        return True
    if subject.id in viewer.coworker_ids:
        return True
    return viewer.is_org_admin and subject.org_id is not None and subject.org_id == viewer.org_id


def can_update_profile(viewer: AccessProfile, subject: Profile) -> bool:
    # Update rights are narrower than view rights: coworkers may look but not touch.
    if viewer.is_super_admin:
        return True
    if not viewer.known:
        return False
    if subject.id == viewer.caller_id:
        return True
    return viewer.is_org_admin and subject.org_id is not None and subject.org_id == viewer.org_id


def can_publish(
    profile: AccessProfile,
    *,
    layer: str,
    org_id: str | None,
    project_ids: Iterable[str] = (),
) -> bool:
    # Mirror the role matrix: who may place content at which layer.
    if profile.is_super_admin:
        return True
    if not profile.known:
        return False
    if layer == "app":
        return False
    if org_id is not None and org_id != profile.org_id:
        return False
    if layer == "user":
        return True
    if profile.is_org_admin:
        return org_id is not None
    if layer == "project":
        targets = set(project_ids)
        return bool(targets) and targets <= profile.leader_project_ids
    return False


def can_attribute(profile: AccessProfile, *, created_by: str | None, org_id: str | None) -> bool:
    # Only operators may file content under another user's name.
    if created_by is None or created_by == profile.caller_id:
        return profile.known
    if profile.is_super_admin:
        return True
    return profile.is_org_admin and org_id is not None and org_id == profile.org_id


def can_retag(profile: AccessProfile, document: Document) -> bool:
    if profile.is_super_admin:
        return True
    if not profile.known:
        return False
    if profile.is_org_admin and document.org_id is not None and document.org_id == profile.org_id:
        return True
    return document.created_by is not None and document.created_by == profile.caller_id


def can_view_project(profile: AccessProfile, project: Project) -> bool:
    if profile.is_super_admin:
        return True
    if not profile.known:
        return False
    if profile.is_org_admin and project.org_id == profile.org_id:
        return True
    return project.id in profile.project_ids


def can_operate_jobs(profile: AccessProfile, org_id: str | None) -> bool:
    # Operators: super admins everywhere, org admins within their org.
    if profile.is_super_admin:
        return True
    return profile.is_org_admin and org_id is not None and org_id == profile.org_id


@dataclass(frozen=True)
class RetrievalScope:
    profile: AccessProfile
    project_id: str | None = None
    audience_tag: str | None = None

    def clause(self) -> ColumnElement[bool]:
        # Only ready documents the caller may see, narrowed by the optional focus.
        parts: list[ColumnElement[bool]] = [visibility_clause(self.profile), Document.status == "ready"]
        if self.project_id is not None:
            # A project focus narrows project-layer content; broader layers still apply.
            parts.append(
                or_(Document.layer != "project", _targets_any("project", [self.project_id]))
            )
        if self.audience_tag is not None:
            # App-layer content tagged for other audiences is hidden; untagged content is shared.
            parts.append(
                or_(
                    Document.layer != "app",
                    not_(_has_targets("app")),
                    _targets_any("app", [self.audience_tag]),
                )
            )
        return and_(*parts)

    def allows(self, document: Document) -> bool:
        if document.status != "ready" or not can_view(self.profile, document):
            return False
        if self.project_id is not None and document.layer == "project":
            if self.project_id not in document.target_project_ids:
                return False
        if self.audience_tag is not None and document.layer == "app":
            tags = document.target_app_ids
            if tags and self.audience_tag not in tags:
                return False
        return True


def build_retrieval_scope(
    profile: AccessProfile,
    *,
    project_id: str | None = None,
    audience_tag: str | None = None,
) -> RetrievalScope:
    return RetrievalScope(profile=profile, project_id=project_id, audience_tag=audience_tag)
