from __future__ import annotations

import asyncio
import logging

from stratarag.core.config import get_settings
from stratarag.core.errors import LLMError, ProviderConfigError
from stratarag.ingestion.embeddings import embed_text

logger = logging.getLogger(__name__)


class GeminiVertexProvider:
    def __init__(self) -> None:
        self._settings = get_settings()

    def _format_messages(self, messages: list[dict]) -> str:
        # Preserve roles and keep system guidance at the top of the prompt.
        system_lines: list[str] = []
        other_lines: list[str] = []
        for msg in messages:
            role = msg.get("role", "user")
            line = f"{role.upper()}: {msg.get('content', '')}"
            if role == "system":
                system_lines.append(line)
            else:
                other_lines.append(line)
        return "\n".join(system_lines + other_lines)

    def _validate_config(self) -> tuple[str, str]:
        project = self._settings.google_cloud_project
        location = self._settings.google_cloud_location
        missing = []
        if not project:
            missing.append("GOOGLE_CLOUD_PROJECT")
        if not location:
            missing.append("GOOGLE_CLOUD_LOCATION")
        if missing:
            raise ProviderConfigError(f"Vertex config missing: set {', '.join(missing)} in .env.")
        return project, location

    def _generate(self, prompt: str, model_name: str, generation_config: dict) -> str:
        project, location = self._validate_config()
        try:
            from vertexai import init
            from vertexai.generative_models import GenerativeModel
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError("Vertex AI SDK not available. Install google-cloud-aiplatform.") from exc
        init(project=project, location=location)
        response = GenerativeModel(model_name).generate_content(prompt, generation_config=generation_config)
        return str(getattr(response, "text", "") or "")

    async def complete(
        self,
        messages: list[dict],
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        # Policy model names target the OpenAI gateway; Vertex always uses its configured model.
        _ = model
        generation_config: dict = {}
        if temperature is not None:
            generation_config["temperature"] = temperature
        if max_tokens is not None:
            generation_config["max_output_tokens"] = max_tokens
        if json_mode:
            generation_config["response_mime_type"] = "application/json"
        prompt = self._format_messages(messages)
        try:
            return await asyncio.to_thread(
                self._generate, prompt, self._settings.gemini_model, generation_config
            )
        except ProviderConfigError:
            raise
        except Exception as exc:
            logger.error("vertex_generate_error model=%s", self._settings.gemini_model)
            raise LLMError("Vertex AI request failed. Check credentials and model access.") from exc

    async def embed(self, text: str) -> list[float]:
        return embed_text(text)
