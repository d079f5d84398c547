from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.domain.models import RoutingPolicy


async def find_org_policy(session: AsyncSession, *, agent_type: str, org_id: str) -> RoutingPolicy | None:
    result = await session.execute(
        select(RoutingPolicy)
        .where(
            RoutingPolicy.agent_type == agent_type,
            RoutingPolicy.is_active.is_(True),
            RoutingPolicy.org_id == org_id,
        )
        .order_by(RoutingPolicy.created_at.desc(), RoutingPolicy.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_app_policy(session: AsyncSession, *, agent_type: str, app_id: str) -> RoutingPolicy | None:
    result = await session.execute(
        select(RoutingPolicy)
        .where(
            RoutingPolicy.agent_type == agent_type,
            RoutingPolicy.is_active.is_(True),
            RoutingPolicy.org_id.is_(None),
            RoutingPolicy.app_id == app_id,
        )
        .order_by(RoutingPolicy.created_at.desc(), RoutingPolicy.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_global_policy(session: AsyncSession, *, agent_type: str) -> RoutingPolicy | None:
    result = await session.execute(
        select(RoutingPolicy)
        .where(
            RoutingPolicy.agent_type == agent_type,
            RoutingPolicy.is_active.is_(True),
            RoutingPolicy.org_id.is_(None),
            RoutingPolicy.app_id.is_(None),
        )
        .order_by(RoutingPolicy.created_at.desc(), RoutingPolicy.id)
        .limit(1)
    )
    return result.scalar_one_or_none()
