from __future__ import annotations

from stratarag.ingestion.embeddings import embed_text


class FakeLLMProvider:
    def __init__(self, response: str = "This is a fake response.", *, script: list[str] | None = None) -> None:
        # Deterministic responses keep tests stable without external calls.
        self._response = response
        # Scripted replies are consumed in order, then the default response repeats.
        self._script = list(script or [])
        self.calls: list[dict] = []

    async def complete(
        self,
        messages: list[dict],
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> str:
        self.calls.append(
            {
                "messages": messages,
                "model": model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "json_mode": json_mode,
            }
        )
        if self._script:
            return self._script.pop(0)
        return self._response

    async def embed(self, text: str) -> list[float]:
        return embed_text(text)
