from __future__ import annotations

from typing import Any


class StrataError(Exception):
    """Base error for stratarag."""


class ValidationError(StrataError):
    """Submitted job violates layer or audience invariants; never queued."""


class JobNotFoundError(StrataError):
    """Ingestion job id is unknown."""


class TransportError(StrataError):
    """Vectorizing worker unreachable, timed out, or answered unusably."""

    def __init__(self, message: str, *, response: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.response = response


class WorkerApplicationError(StrataError):
    """Vectorizing worker explicitly reported a processing failure."""

    def __init__(self, message: str, *, response: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.response = response


class ParseError(StrataError):
    """Structured routing output could not be parsed."""


class ProviderConfigError(StrataError):
    """Missing or invalid provider configuration."""


class LLMError(StrataError):
    """LLM gateway request failure."""


class RetrievalError(StrataError):
    """Retrieval layer failure."""


class DatabaseError(StrataError):
    """Database layer failure."""
