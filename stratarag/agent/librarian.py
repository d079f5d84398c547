from __future__ import annotations

import logging
import time

from langgraph.graph import END, StateGraph

from stratarag.agent.prompts import GREETING_REPLY, build_answer_messages, is_greeting
from stratarag.core.config import get_settings
from stratarag.domain.state import LibrarianState
from stratarag.services.access.engine import RetrievalScope


logger = logging.getLogger(__name__)


def build_graph(*, retriever, llm, scope: RetrievalScope, answer_model: str | None = None):
    settings = get_settings()
    graph = StateGraph(LibrarianState)

    async def classify(state: LibrarianState) -> dict:
        return {"conversational": is_greeting(state["query"])}

    async def greet(state: LibrarianState) -> dict:
        # Salutations are answered directly without touching the knowledge store.
        return {"answer": GREETING_REPLY, "retrieved": [], "sources": []}

    async def retrieve(state: LibrarianState) -> dict:
        started = time.monotonic()
        full_context = state["generation_mode"] == "full_context"
        top_k = settings.retrieval_full_context_top_k if full_context else settings.retrieval_top_k
        retrieved = await retriever.retrieve(scope, state["query"], top_k)
        sources = [
            {
                "document_id": item.get("document_id"),
                "source": item.get("source"),
                "score": item.get("score"),
                "layer": item.get("layer"),
            }
            for item in retrieved
        ]
        logger.info(
            "librarian_retrieved count=%s mode=%s latency_ms=%.1f",
            len(retrieved),
            state["generation_mode"],
            (time.monotonic() - started) * 1000.0,
        )
        return {"retrieved": retrieved, "sources": sources}

    async def generate(state: LibrarianState) -> dict:
        messages = build_answer_messages(
            state["retrieved"],
            state["query"],
            project_context=state["project_context"],
            generation_mode=state["generation_mode"],
        )
        full_context = state["generation_mode"] == "full_context"
        model = answer_model or (settings.full_context_model if full_context else settings.answer_model)
        answer = await llm.complete(messages, model=model)
        return {"answer": answer}

    graph.add_node("classify", classify)
    graph.add_node("greet", greet)
    graph.add_node("retrieve", retrieve)
    graph.add_node("generate", generate)

    graph.set_entry_point("classify")
    graph.add_conditional_edges(
        "classify",
        lambda state: "greet" if state["conversational"] else "retrieve",
        {"greet": "greet", "retrieve": "retrieve"},
    )
    graph.add_edge("greet", END)
    graph.add_edge("retrieve", "generate")
    graph.add_edge("generate", END)

    return graph.compile()


async def run_librarian(
    *,
    retriever,
    llm,
    scope: RetrievalScope,
    query: str,
    project_context: str,
    generation_mode: str,
    answer_model: str | None = None,
) -> LibrarianState:
    graph = build_graph(retriever=retriever, llm=llm, scope=scope, answer_model=answer_model)
    state: LibrarianState = {
        "query": query,
        "project_context": project_context,
        "generation_mode": generation_mode,
        "conversational": False,
        "retrieved": [],
        "answer": None,
        "sources": [],
    }
    return await graph.ainvoke(state)
