from __future__ import annotations

import json

import httpx
import pytest

from stratarag.core.config import EMBED_DIM, get_settings
from stratarag.core.errors import LLMError, ProviderConfigError
from stratarag.providers.llm.factory import get_llm_provider
from stratarag.providers.llm.fake import FakeLLMProvider
from stratarag.providers.llm.gemini_vertex import GeminiVertexProvider
from stratarag.providers.llm.openai_compat import OpenAICompatProvider


@pytest.fixture
def gateway_settings(monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "llm_base_url", "https://gateway.test/v1")
    monkeypatch.setattr(settings, "llm_api_key", "sk-test")
    monkeypatch.setattr(settings, "ext_retry_backoff_ms", 1)
    return settings


def test_factory_selects_configured_provider(monkeypatch) -> None:
    settings = get_settings()
    monkeypatch.setattr(settings, "llm_provider", "fake")
    assert isinstance(get_llm_provider(), FakeLLMProvider)
    monkeypatch.setattr(settings, "llm_provider", "vertex")
    assert isinstance(get_llm_provider(), GeminiVertexProvider)
    monkeypatch.setattr(settings, "llm_provider", "openai")
    assert isinstance(get_llm_provider(), OpenAICompatProvider)


@pytest.mark.asyncio
async def test_openai_compat_requests_json_mode(gateway_settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "{\"ok\": true}"}}]})

    provider = OpenAICompatProvider(transport=httpx.MockTransport(handler))
    result = await provider.complete(
        [{"role": "user", "content": "route me"}],
        model="router-small",
        temperature=0.0,
        max_tokens=50,
        json_mode=True,
    )

    assert result == "{\"ok\": true}"
    body = json.loads(seen[0].content)
    assert str(seen[0].url) == "https://gateway.test/v1/chat/completions"
    assert seen[0].headers["Authorization"] == "Bearer sk-test"
    assert body["model"] == "router-small"
    assert body["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_openai_compat_retries_transient_then_raises(gateway_settings) -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503, json={"error": "overloaded"})

    provider = OpenAICompatProvider(transport=httpx.MockTransport(handler))
    with pytest.raises(LLMError):
        await provider.complete([{"role": "user", "content": "hi"}])
    assert calls["count"] == gateway_settings.ext_retry_max_attempts


@pytest.mark.asyncio
async def test_openai_compat_embedding_dimension_is_checked(gateway_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2]}]})

    provider = OpenAICompatProvider(transport=httpx.MockTransport(handler))
    with pytest.raises(LLMError):
        await provider.embed("hello")


@pytest.mark.asyncio
async def test_openai_compat_missing_config(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "llm_api_key", None)
    provider = OpenAICompatProvider()
    with pytest.raises(ProviderConfigError):
        await provider.complete([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_vertex_provider_missing_config(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "google_cloud_project", None)
    provider = GeminiVertexProvider()
    with pytest.raises(ProviderConfigError):
        await provider.complete([{"role": "user", "content": "hi"}])
    assert len(await provider.embed("hi")) == EMBED_DIM


@pytest.mark.asyncio
async def test_fake_provider_replays_script_then_default() -> None:
    provider = FakeLLMProvider("default", script=["first"])
    assert await provider.complete([]) == "first"
    assert await provider.complete([]) == "default"
    assert len(provider.calls) == 2
