from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from pagenarrator.cancellation import CancellationScope, OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CollaboratorError(RuntimeError):
    """Raised when an external extraction or synthesis call fails."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QuotaExceededError(CollaboratorError):
    """The collaborator rejected the call because a rate or quota limit was hit."""


class TransientCollaboratorError(CollaboratorError):
    """A failure that is expected to clear up on its own (5xx, timeouts, resets)."""


class EmptyResultError(TransientCollaboratorError):
    """The collaborator answered but returned no usable payload."""


_QUOTA_MARKERS = ("429", "quota", "resource_exhausted", "resource exhausted", "rate limit")


def classify_http_error(exc: Exception) -> CollaboratorError:
    """Map an ``httpx`` failure onto the collaborator error taxonomy."""

    if isinstance(exc, CollaboratorError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        detail = (exc.response.text or "").strip()[:200]
        message = f"Request failed with status {status}" + (f": {detail}" if detail else "")
        if status == 429 or any(marker in detail.lower() for marker in _QUOTA_MARKERS[1:]):
            return QuotaExceededError(message, status_code=status)
        if status >= 500 or status in {408, 409}:
            return TransientCollaboratorError(message, status_code=status)
        return CollaboratorError(message, status_code=status)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return TransientCollaboratorError(f"Request failed: {exc}")
    text = str(exc).lower()
    if any(marker in text for marker in _QUOTA_MARKERS):
        return QuotaExceededError(str(exc))
    return CollaboratorError(str(exc) or exc.__class__.__name__)


@dataclass(frozen=True)
class RetryPolicy:
    transient_attempts: int = 5
    transient_base_delay: float = 1.0
    transient_max_delay: float = 16.0
    quota_attempts: int = 10
    quota_base_delay: float = 15.0
    quota_jitter: float = 5.0

    def transient_delay(self, attempt: int) -> float:
        return min(self.transient_max_delay, self.transient_base_delay * (2 ** attempt))

    def quota_delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        return self.quota_base_delay + rng() * self.quota_jitter


EXTRACTION_RETRY_POLICY = RetryPolicy()
SYNTHESIS_RETRY_POLICY = RetryPolicy(
    transient_attempts=3,
    transient_base_delay=2.0,
    transient_max_delay=16.0,
    quota_attempts=5,
    quota_base_delay=10.0,
    quota_jitter=5.0,
)


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    scope: CancellationScope,
    policy: RetryPolicy,
    label: str = "request",
    on_quota: Optional[Callable[[QuotaExceededError], None]] = None,
    rng: Callable[[], float] = random.random,
) -> T:
    """Run ``operation`` until it succeeds, a ceiling is hit, or ``scope`` is cancelled.

    Transient failures back off exponentially; quota failures wait a long,
    jittered delay and have their own, higher ceiling. Non-retryable
    :class:`CollaboratorError` instances propagate immediately.
    """

    transient_attempt = 0
    quota_attempt = 0
    while True:
        scope.raise_if_cancelled()
        try:
            return await scope.run(operation())
        except OperationCancelled:
            raise
        except Exception as raw_exc:
            if scope.cancelled:
                raise OperationCancelled(f"{label} abandoned after cancellation") from raw_exc
            exc = classify_http_error(raw_exc)
            if isinstance(exc, QuotaExceededError):
                if on_quota is not None:
                    on_quota(exc)
                if quota_attempt >= policy.quota_attempts:
                    raise exc from raw_exc
                delay = policy.quota_delay(quota_attempt, rng)
                quota_attempt += 1
                logger.warning("%s hit a quota limit; retrying in %.1fs (%s/%s)", label, delay, quota_attempt, policy.quota_attempts)
            elif isinstance(exc, TransientCollaboratorError):
                if transient_attempt >= policy.transient_attempts:
                    raise exc from raw_exc
                delay = policy.transient_delay(transient_attempt)
                transient_attempt += 1
                logger.info("%s failed (%s); retrying in %.1fs (%s/%s)", label, exc, delay, transient_attempt, policy.transient_attempts)
            else:
                if exc is raw_exc:
                    raise
                raise exc from raw_exc
            await scope.sleep(delay)
