from __future__ import annotations

import asyncio

import httpx
import pytest

from conftest import FAST_RETRY
from pagenarrator.cancellation import CancellationScope, OperationCancelled
from pagenarrator.retry import (
    EXTRACTION_RETRY_POLICY,
    SYNTHESIS_RETRY_POLICY,
    CollaboratorError,
    QuotaExceededError,
    TransientCollaboratorError,
    call_with_retries,
    classify_http_error,
)


def _status_error(status: int, body: str = "") -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.test/v1/chat/completions")
    response = httpx.Response(status, request=request, text=body)
    return httpx.HTTPStatusError("failed", request=request, response=response)


def test_classify_http_errors():
    assert isinstance(classify_http_error(_status_error(429)), QuotaExceededError)
    assert isinstance(classify_http_error(_status_error(400, "RESOURCE_EXHAUSTED: quota")), QuotaExceededError)
    assert isinstance(classify_http_error(_status_error(503)), TransientCollaboratorError)
    assert isinstance(classify_http_error(httpx.ConnectError("reset")), TransientCollaboratorError)
    plain = classify_http_error(_status_error(401, "bad key"))
    assert type(plain) is CollaboratorError
    assert plain.status_code == 401


def test_policy_delays():
    assert [EXTRACTION_RETRY_POLICY.transient_delay(n) for n in range(6)] == [1, 2, 4, 8, 16, 16]
    assert EXTRACTION_RETRY_POLICY.quota_delay(0, lambda: 0.5) == pytest.approx(17.5)
    assert SYNTHESIS_RETRY_POLICY.transient_delay(0) == 2
    assert SYNTHESIS_RETRY_POLICY.quota_delay(3, lambda: 0.0) == 10


def test_transient_failures_are_retried_until_success():
    attempts = []

    async def operation():
        attempts.append(1)
        if len(attempts) < 3:
            raise TransientCollaboratorError("flaky")
        return "done"

    async def scenario():
        return await call_with_retries(operation, scope=CancellationScope(), policy=FAST_RETRY)

    assert asyncio.run(scenario()) == "done"
    assert len(attempts) == 3


def test_transient_ceiling_raises_last_error():
    attempts = []

    async def operation():
        attempts.append(1)
        raise _status_error(502)

    async def scenario():
        await call_with_retries(operation, scope=CancellationScope(), policy=FAST_RETRY)

    with pytest.raises(TransientCollaboratorError):
        asyncio.run(scenario())
    assert len(attempts) == FAST_RETRY.transient_attempts + 1


def test_quota_signal_reports_every_hit():
    signals = []

    async def operation():
        raise QuotaExceededError("429 Too Many Requests")

    async def scenario():
        await call_with_retries(operation, scope=CancellationScope(), policy=FAST_RETRY, on_quota=signals.append)

    with pytest.raises(QuotaExceededError):
        asyncio.run(scenario())
    assert len(signals) == FAST_RETRY.quota_attempts + 1


def test_non_retryable_errors_propagate_immediately():
    attempts = []

    async def operation():
        attempts.append(1)
        raise _status_error(400, "bad request")

    async def scenario():
        await call_with_retries(operation, scope=CancellationScope(), policy=FAST_RETRY)

    with pytest.raises(CollaboratorError):
        asyncio.run(scenario())
    assert len(attempts) == 1


def test_cancellation_aborts_backoff_wait():
    async def operation():
        raise TransientCollaboratorError("flaky")

    async def scenario():
        scope = CancellationScope()
        slow = FAST_RETRY.__class__(transient_attempts=5, transient_base_delay=30.0, transient_max_delay=30.0)
        asyncio.get_running_loop().call_later(0.05, scope.cancel)
        await asyncio.wait_for(call_with_retries(operation, scope=scope, policy=slow), timeout=2.0)

    with pytest.raises(OperationCancelled):
        asyncio.run(scenario())
