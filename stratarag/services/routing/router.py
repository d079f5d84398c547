from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from stratarag.agent.librarian import run_librarian
from stratarag.agent.prompts import NO_PROJECT_CONTEXT
from stratarag.core.config import get_settings
from stratarag.core.errors import LLMError, ParseError, ProviderConfigError, ValidationError
from stratarag.persistence.repos import projects as projects_repo
from stratarag.providers.llm.base import LLMProvider
from stratarag.providers.llm.factory import get_llm_provider
from stratarag.providers.retrieval.scoped_pgvector import ScopedPgVectorRetriever
from stratarag.services.access.engine import (
    AccessProfile,
    build_retrieval_scope,
    can_view_project,
    load_access_profile,
)
from stratarag.services.routing.policy import ResolvedPolicy, resolve_routing_policy
from stratarag.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DESTINATIONS = ("librarian", "analyst")
GENERATION_MODES = ("chunks", "full_context")
# Safest choice when the router output cannot be trusted.
DEFAULT_DESTINATION = "librarian"
DEFAULT_GENERATION_MODE = "chunks"

ANALYST_UNAVAILABLE = (
    "The analyst agent is not yet available. "
    "Try asking a question that can be answered from your documents."
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass(frozen=True)
class RoutingDecision:
    destination: str
    generation_mode: str
    reasoning: str
    policy_source: str = "fallback"
    fallback: bool = False


@dataclass
class QueryAnswer:
    answer: str
    routed_to: str
    generation_mode: str
    reasoning: str
    sources: list[dict[str, Any]] = field(default_factory=list)
    policy_source: str = "fallback"
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "sources": self.sources,
            "routed_to": self.routed_to,
            "generation_mode": self.generation_mode,
            "reasoning": self.reasoning,
        }


def format_project_context(identity: dict[str, Any] | None) -> str:
    # Absent identity yields a neutral placeholder, never an error.
    if not identity:
        return NO_PROJECT_CONTEXT
    lines = []
    for label, key in (("Market type", "market_type"), ("Project type", "project_type"), ("Description", "description")):
        value = identity.get(key)
        if isinstance(value, str) and value.strip():
            lines.append(f"{label}: {value.strip()}")
    return "\n".join(lines) if lines else NO_PROJECT_CONTEXT


def parse_decision(raw: str) -> tuple[str, str, str]:
    text = (raw or "").strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)
    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise ParseError("router output is not JSON") from exc
    if not isinstance(payload, dict):
        raise ParseError("router output is not a JSON object")
    destination = payload.get("destination")
    mode = payload.get("generation_mode")
    if destination not in DESTINATIONS:
        raise ParseError(f"missing or unknown destination: {destination!r}")
    if mode not in GENERATION_MODES:
        raise ParseError(f"missing or unknown generation_mode: {mode!r}")
    reasoning = payload.get("reasoning")
    return destination, mode, reasoning.strip() if isinstance(reasoning, str) else ""


def _fallback(policy: ResolvedPolicy, why: str) -> RoutingDecision:
    increment_counter("router_fallback_total")
    return RoutingDecision(
        destination=DEFAULT_DESTINATION,
        generation_mode=DEFAULT_GENERATION_MODE,
        reasoning=f"fallback: {why}",
        policy_source=policy.source,
        fallback=True,
    )


async def route_with_policy(
    query: str,
    *,
    llm: LLMProvider,
    policy: ResolvedPolicy,
    project_context: str,
    generation_mode: str | None = None,
) -> RoutingDecision:
    # Pure function of (query, context, resolved policy); never raises on LLM slips.
    if generation_mode is not None and generation_mode not in GENERATION_MODES:
        raise ValidationError(f"Unsupported generation_mode: {generation_mode}")
    messages = [
        {"role": "system", "content": policy.render_prompt(project_context)},
        {"role": "user", "content": query},
    ]
    try:
        raw = await llm.complete(
            messages,
            model=policy.model,
            temperature=policy.temperature,
            max_tokens=policy.max_tokens,
            json_mode=True,
        )
        destination, mode, reasoning = parse_decision(raw)
        decision = RoutingDecision(
            destination=destination,
            generation_mode=mode,
            reasoning=reasoning,
            policy_source=policy.source,
        )
    except ParseError as exc:
        logger.warning("router_parse_failed policy=%s error=%s", policy.source, exc)
        decision = _fallback(policy, str(exc))
    except (LLMError, ProviderConfigError) as exc:
        logger.warning("router_llm_failed policy=%s error=%s", policy.source, exc)
        decision = _fallback(policy, f"router unavailable ({type(exc).__name__})")

    if generation_mode is not None and generation_mode != decision.generation_mode:
        # Caller overrides always beat the router.
        decision = RoutingDecision(
            destination=decision.destination,
            generation_mode=generation_mode,
            reasoning=f"{decision.reasoning} (generation_mode overridden by caller)".strip(),
            policy_source=decision.policy_source,
            fallback=decision.fallback,
        )
    increment_counter(f"router_decisions_total.{decision.destination}.{decision.generation_mode}")
    return decision


async def resolve_project_context(
    session: AsyncSession,
    profile: AccessProfile,
    project_id: str | None,
) -> tuple[str, str | None]:
    # Returns the context block and the project id usable as a retrieval focus.
    if not project_id:
        return NO_PROJECT_CONTEXT, None
    project = await projects_repo.get_project(session, project_id)
    if project is None or not can_view_project(profile, project):
        return NO_PROJECT_CONTEXT, None
    identity = {
        "market_type": project.market_type,
        "project_type": project.project_type,
        "description": project.description,
    }
    return format_project_context(identity), project.id


def _policy_org(profile: AccessProfile, org_id: str | None) -> str | None:
    # Only super admins may borrow another organization's routing policy.
    if org_id and profile.is_super_admin:
        return org_id
    return profile.org_id


async def route(
    session: AsyncSession,
    query: str,
    caller: AccessProfile,
    *,
    project_id: str | None = None,
    org_id: str | None = None,
    audience_tag: str | None = None,
    generation_mode: str | None = None,
    llm: LLMProvider | None = None,
) -> RoutingDecision:
    project_context, _ = await resolve_project_context(session, caller, project_id)
    policy = await resolve_routing_policy(
        session,
        org_id=_policy_org(caller, org_id),
        app_id=audience_tag or get_settings().default_app_id,
    )
    return await route_with_policy(
        query,
        llm=llm or get_llm_provider(),
        policy=policy,
        project_context=project_context,
        generation_mode=generation_mode,
    )


async def answer(
    session: AsyncSession,
    *,
    query: str,
    caller_id: str | None,
    org_id: str | None = None,
    project_id: str | None = None,
    audience_tag: str | None = None,
    generation_mode: str | None = None,
    llm: LLMProvider | None = None,
    retriever=None,
) -> QueryAnswer:
    llm = llm or get_llm_provider()
    profile = await load_access_profile(session, caller_id)
    project_context, focus_project_id = await resolve_project_context(session, profile, project_id)
    app_id = audience_tag or get_settings().default_app_id
    policy = await resolve_routing_policy(session, org_id=_policy_org(profile, org_id), app_id=app_id)
    decision = await route_with_policy(
        query,
        llm=llm,
        policy=policy,
        project_context=project_context,
        generation_mode=generation_mode,
    )
    logger.info(
        "query_routed caller_id=%s destination=%s mode=%s policy=%s fallback=%s",
        caller_id,
        decision.destination,
        decision.generation_mode,
        decision.policy_source,
        decision.fallback,
    )

    if decision.destination == "analyst":
        return QueryAnswer(
            answer=ANALYST_UNAVAILABLE,
            routed_to="analyst",
            generation_mode=decision.generation_mode,
            reasoning=decision.reasoning,
            policy_source=decision.policy_source,
            fallback=decision.fallback,
        )

    scope = build_retrieval_scope(profile, project_id=focus_project_id, audience_tag=audience_tag)
    retriever = retriever or ScopedPgVectorRetriever(session, llm.embed)
    state = await run_librarian(
        retriever=retriever,
        llm=llm,
        scope=scope,
        query=query,
        project_context=project_context,
        generation_mode=decision.generation_mode,
        answer_model=policy.answer_model,
    )
    return QueryAnswer(
        answer=state.get("answer") or "",
        routed_to="librarian",
        generation_mode=decision.generation_mode,
        reasoning=decision.reasoning,
        sources=list(state.get("sources") or []),
        policy_source=decision.policy_source,
        fallback=decision.fallback,
    )
