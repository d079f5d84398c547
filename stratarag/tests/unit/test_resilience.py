from __future__ import annotations

import httpx
import pytest

from stratarag.services.resilience import RetryBudget, call_with_retries, is_transient
from stratarag.services.telemetry import counters_snapshot


_REQUEST = httpx.Request("POST", "https://gateway.test/v1/chat/completions")


def _status_error(status: int, headers: dict[str, str] | None = None) -> httpx.HTTPStatusError:
    response = httpx.Response(status, request=_REQUEST, headers=headers)
    return httpx.HTTPStatusError(f"status {status}", request=_REQUEST, response=response)


def _budget(attempts: int) -> RetryBudget:
    return RetryBudget(attempts=attempts, per_try_timeout_s=0.5, base_delay_s=0.001)


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (_status_error(503), True),
        (_status_error(429), True),
        (_status_error(400), False),
        (_status_error(401), False),
        (httpx.ConnectError("refused"), True),
        (TimeoutError("slow"), True),
        (ValueError("bad json"), False),
    ],
)
def test_is_transient(exc, expected) -> None:
    assert is_transient(exc) is expected


@pytest.mark.asyncio
async def test_transient_failure_is_retried_and_counted() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise httpx.ReadTimeout("timeout", request=_REQUEST)
        return "ok"

    assert await call_with_retries(flaky, integration="llm_gateway", budget=_budget(2)) == "ok"
    assert calls["count"] == 2
    assert counters_snapshot().get("external_retries_total.llm_gateway") == 1


@pytest.mark.asyncio
async def test_client_errors_are_not_retried() -> None:
    calls = {"count": 0}

    async def rejected() -> None:
        calls["count"] += 1
        raise _status_error(400)

    with pytest.raises(httpx.HTTPStatusError):
        await call_with_retries(rejected, integration="llm_gateway", budget=_budget(3))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_budget_exhaustion_reraises_last_error() -> None:
    calls = {"count": 0}

    async def throttled() -> None:
        calls["count"] += 1
        raise _status_error(429, headers={"Retry-After": "0"})

    with pytest.raises(httpx.HTTPStatusError):
        await call_with_retries(throttled, integration="vectorizer", budget=_budget(3))
    assert calls["count"] == 3
    assert counters_snapshot().get("external_retries_total.vectorizer") == 2
