from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.core.config import get_settings
from stratarag.domain.models import RoutingPolicy
from stratarag.persistence.repos import policies as policies_repo


logger = logging.getLogger(__name__)

ROUTER_AGENT_TYPE = "router"

FALLBACK_SYSTEM_PROMPT = """You route questions for a document assistant.

Project:
{project_context}

Pick exactly one destination:
- "librarian": questions answered from the organization's documents (default).
- "analyst": numeric analysis, aggregations or charts over structured data.

Pick exactly one generation_mode:
- "chunks": a focused question answerable from a few passages (default, cheaper).
- "full_context": synthesis, comparison or summary across whole documents.

Reply with a JSON object only:
{"destination": "...", "generation_mode": "...", "reasoning": "one short sentence"}"""


@dataclass(frozen=True)
class ResolvedPolicy:
    # Resolved once per query and handed to the router; the router never looks policies up itself.
    source: str
    policy_id: str | None
    system_prompt: str
    model: str
    temperature: float
    max_tokens: int
    answer_model: str | None = None

    def render_prompt(self, project_context: str) -> str:
        # Plain replacement: stored prompts may contain literal braces.
        return self.system_prompt.replace("{project_context}", project_context)


def fallback_policy() -> ResolvedPolicy:
    # Keeps the router operable with zero policy rows.
    return ResolvedPolicy(
        source="fallback",
        policy_id=None,
        system_prompt=FALLBACK_SYSTEM_PROMPT,
        model=get_settings().router_model,
        temperature=0.0,
        max_tokens=200,
    )


def _coerce_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_int(value: Any, default: int) -> int:
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        return default


def policy_from_row(row: RoutingPolicy, *, source: str) -> ResolvedPolicy:
    # Unset parameters inherit from the fallback policy.
    base = fallback_policy()
    params = row.parameters_json if isinstance(row.parameters_json, dict) else {}
    return ResolvedPolicy(
        source=source,
        policy_id=row.id,
        system_prompt=(row.system_prompt or "").strip() or base.system_prompt,
        model=str(params.get("model") or base.model),
        temperature=_coerce_float(params.get("temperature"), base.temperature),
        max_tokens=_coerce_int(params.get("max_tokens"), base.max_tokens),
        answer_model=params.get("answer_model") or None,
    )


async def resolve_routing_policy(
    session: AsyncSession,
    *,
    org_id: str | None,
    app_id: str | None,
) -> ResolvedPolicy:
    # Most specific wins: organization, then audience, then global, then the bundled fallback.
    if org_id:
        row = await policies_repo.find_org_policy(session, agent_type=ROUTER_AGENT_TYPE, org_id=org_id)
        if row is not None:
            return policy_from_row(row, source="org")
    if app_id:
        row = await policies_repo.find_app_policy(session, agent_type=ROUTER_AGENT_TYPE, app_id=app_id)
        if row is not None:
            return policy_from_row(row, source="app")
    row = await policies_repo.find_global_policy(session, agent_type=ROUTER_AGENT_TYPE)
    if row is not None:
        return policy_from_row(row, source="global")
    logger.debug("routing_policy_fallback org_id=%s app_id=%s", org_id, app_id)
    return fallback_policy()
