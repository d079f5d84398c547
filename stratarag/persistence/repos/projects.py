from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.core.errors import ValidationError
from stratarag.domain.models import OrganizationMember, Project, ProjectMember


async def get_project(session: AsyncSession, project_id: str) -> Project | None:
    result = await session.execute(select(Project).where(Project.id == project_id))
    return result.scalar_one_or_none()


async def list_project_org_ids(session: AsyncSession, project_ids: list[str]) -> dict[str, str]:
    # Map project_id -> org_id for the projects that exist.
    if not project_ids:
        return {}
    result = await session.execute(
        select(Project.id, Project.org_id).where(Project.id.in_(sorted(set(project_ids))))
    )
    return {str(project_id): str(org_id) for project_id, org_id in result.all()}


async def add_project_member(
    session: AsyncSession,
    *,
    project_id: str,
    user_id: str,
    role: str = "member",
) -> ProjectMember:
    # Project membership is a subset of the owning organization's active roster.
    if role not in {"leader", "member"}:
        raise ValidationError(f"Unsupported project role: {role}")
    project = await get_project(session, project_id)
    if project is None:
        raise ValidationError(f"Unknown project: {project_id}")
    membership = await session.execute(
        select(OrganizationMember.id).where(
            OrganizationMember.org_id == project.org_id,
            OrganizationMember.user_id == user_id,
            OrganizationMember.status == "active",
        )
    )
    if membership.scalars().first() is None:
        raise ValidationError("Project members must be active members of the project's organization")
    member = ProjectMember(project_id=project_id, user_id=user_id, role=role)
    session.add(member)
    await session.flush()
    return member
