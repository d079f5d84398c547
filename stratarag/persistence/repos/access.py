from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.domain.models import OrganizationMember, Profile, ProjectMember


# These reads back the access engine itself, so they never apply visibility filters.


async def get_profile(session: AsyncSession, profile_id: str) -> Profile | None:
    result = await session.execute(select(Profile).where(Profile.id == profile_id))
    return result.scalar_one_or_none()


async def get_active_membership(
    session: AsyncSession, *, user_id: str, org_id: str
) -> OrganizationMember | None:
    result = await session.execute(
        select(OrganizationMember).where(
            OrganizationMember.user_id == user_id,
            OrganizationMember.org_id == org_id,
            OrganizationMember.status == "active",
        )
    )
    return result.scalars().first()


async def list_project_roles(session: AsyncSession, user_id: str) -> dict[str, str]:
    # Map project_id -> role for every project the user belongs to.
    result = await session.execute(
        select(ProjectMember.project_id, ProjectMember.role).where(ProjectMember.user_id == user_id)
    )
    return {str(project_id): str(role) for project_id, role in result.all()}


async def list_coworker_ids(session: AsyncSession, *, user_id: str, project_ids: set[str]) -> set[str]:
    if not project_ids:
        return set()
    result = await session.execute(
        select(ProjectMember.user_id)
        .where(ProjectMember.project_id.in_(sorted(project_ids)), ProjectMember.user_id != user_id)
        .distinct()
    )
    return {str(row) for row in result.scalars().all()}
