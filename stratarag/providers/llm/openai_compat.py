from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from stratarag.core.config import EMBED_DIM, get_settings
from stratarag.core.errors import LLMError, ProviderConfigError
from stratarag.services.resilience import call_with_retries
from stratarag.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class OpenAICompatProvider:
    """Chat completions and embeddings over an OpenAI-compatible HTTP gateway."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = get_settings()
        # Injected by tests to stub the gateway.
        self._transport = transport

    def _validate_config(self) -> tuple[str, str]:
        # Fail fast to avoid confusing downstream HTTP errors.
        base_url = (self._settings.llm_base_url or "").rstrip("/")
        api_key = self._settings.llm_api_key
        missing = []
        if not base_url:
            missing.append("LLM_BASE_URL")
        if not api_key:
            missing.append("LLM_API_KEY")
        if missing:
            raise ProviderConfigError(f"LLM gateway config missing: set {', '.join(missing)} in .env.")
        return base_url, api_key

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        base_url, api_key = self._validate_config()
        headers = {"Authorization": f"Bearer {api_key}"}
        timeout_s = max(0.2, self._settings.ext_call_timeout_ms / 1000.0)

        async def _call() -> dict[str, Any]:
            async with httpx.AsyncClient(timeout=timeout_s, transport=self._transport) as client:
                response = await client.post(f"{base_url}{path}", json=body, headers=headers)
                response.raise_for_status()
                return response.json()

        started = time.monotonic()
        success = False
        try:
            payload = await call_with_retries(_call, integration="llm_gateway")
            success = True
        except (httpx.HTTPError, TimeoutError, ValueError) as exc:
            logger.warning("llm_gateway_error path=%s error=%s", path, type(exc).__name__)
            raise LLMError(f"LLM gateway request failed: {type(exc).__name__}") from exc
        finally:
            record_external_call(
                integration="llm_gateway",
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=success,
            )
        if not isinstance(payload, dict):
            raise LLMError("LLM gateway returned an unexpected payload")
        return payload

    async def complete(
        self,
        messages: list[dict],
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        body: dict[str, Any] = {
            "model": model or self._settings.answer_model,
            "messages": messages,
        }
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        payload = await self._post("/chat/completions", body)
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise LLMError("LLM gateway response missing choices") from exc
        return str(content or "")

    async def embed(self, text: str) -> list[float]:
        payload = await self._post(
            "/embeddings",
            {"model": self._settings.embedding_model, "input": text, "dimensions": EMBED_DIM},
        )
        try:
            vector = [float(v) for v in payload["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise LLMError("LLM gateway response missing embedding") from exc
        if len(vector) != EMBED_DIM:
            raise LLMError("embedding dimension mismatch")
        return vector
