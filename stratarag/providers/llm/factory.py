from __future__ import annotations

from stratarag.core.config import get_settings
from stratarag.providers.llm.base import LLMProvider
from stratarag.providers.llm.fake import FakeLLMProvider
from stratarag.providers.llm.gemini_vertex import GeminiVertexProvider
from stratarag.providers.llm.openai_compat import OpenAICompatProvider


def get_llm_provider() -> LLMProvider:
    settings = get_settings()
    provider = (settings.llm_provider or "openai").lower()

    if provider == "fake":
        return FakeLLMProvider()
    if provider == "vertex":
        return GeminiVertexProvider()
    return OpenAICompatProvider()
