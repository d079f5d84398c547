from __future__ import annotations

import re
from typing import Any


NO_PROJECT_CONTEXT = "No project context."

GREETING_REPLY = "Hello! I'm your document assistant. How can I help you with your documents?"

_GREETINGS = frozenset(
    {
        "hi",
        "hello",
        "hey",
        "good morning",
        "good afternoon",
        "good evening",
        "thanks",
        "thank you",
        "bonjour",
        "salut",
        "merci",
    }
)
_PUNCT_RE = re.compile(r"[^\w\s]+", re.UNICODE)


def is_greeting(query: str) -> bool:
    # Exact match only; "hello, what does clause 4 say" still goes to retrieval.
    normalized = " ".join(_PUNCT_RE.sub(" ", query.lower()).split())
    return normalized in _GREETINGS


def build_answer_messages(
    retrieved: list[dict[str, Any]],
    query: str,
    *,
    project_context: str,
    generation_mode: str,
) -> list[dict[str, str]]:
    context_lines = []
    for idx, chunk in enumerate(retrieved, start=1):
        source = chunk.get("source", "unknown")
        text = chunk.get("text", "")
        context_lines.append(f"[{idx}] ({source}) {text}")

    system_prompt = (
        "You are the StrataRAG librarian. Answer the user using the provided context and cite "
        "sources by their [n] marker. If the answer is not in the context, say you don't know."
    )
    if generation_mode == "full_context":
        system_prompt += " Give a thorough answer that synthesizes every relevant source."
    system_prompt += f"\n\nProject:\n{project_context}"
    if context_lines:
        system_prompt += "\n\nContext:\n" + "\n".join(context_lines)

    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": query},
    ]
