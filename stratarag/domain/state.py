from __future__ import annotations

from typing import Any, Optional, TypedDict


class LibrarianState(TypedDict):
    query: str
    project_context: str
    generation_mode: str
    conversational: bool
    retrieved: list[dict[str, Any]]
    answer: Optional[str]
    sources: list[dict[str, Any]]
