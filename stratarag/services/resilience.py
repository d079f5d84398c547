from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from stratarag.core.config import get_settings
from stratarag.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryBudget:
    attempts: int
    per_try_timeout_s: float
    base_delay_s: float

    @classmethod
    def from_settings(cls) -> "RetryBudget":
        settings = get_settings()
        return cls(
            attempts=max(1, settings.ext_retry_max_attempts),
            per_try_timeout_s=settings.ext_call_timeout_ms / 1000.0,
            base_delay_s=settings.ext_retry_backoff_ms / 1000.0,
        )


def is_transient(exc: BaseException) -> bool:
    # Throttling and server-side failures are worth another try; client errors are not.
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, (httpx.TransportError, TimeoutError, ConnectionError))


def _retry_after_s(exc: BaseException) -> float | None:
    if not isinstance(exc, httpx.HTTPStatusError):
        return None
    raw = exc.response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


async def call_with_retries(
    call: Callable[[], Awaitable[T]],
    *,
    integration: str,
    budget: RetryBudget | None = None,
) -> T:
    """Run ``call`` under a per-try timeout, retrying transient failures.

    The last failure is re-raised unchanged once the budget is spent, so callers
    keep mapping provider errors themselves. A server-provided ``Retry-After``
    wins over the jittered exponential delay, capped at the per-try timeout.
    """
    budget = budget or RetryBudget.from_settings()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await asyncio.wait_for(call(), timeout=budget.per_try_timeout_s)
        except Exception as exc:  # noqa: BLE001 - re-raised unless transient
            if attempt >= budget.attempts or not is_transient(exc):
                raise
            delay_s = _retry_after_s(exc)
            if delay_s is None:
                delay_s = budget.base_delay_s * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)
            delay_s = min(delay_s, budget.per_try_timeout_s)
            increment_counter(f"external_retries_total.{integration}")
            logger.info(
                "external_retry integration=%s attempt=%s delay_s=%.3f error=%s",
                integration,
                attempt,
                delay_s,
                type(exc).__name__,
            )
            await asyncio.sleep(delay_s)
