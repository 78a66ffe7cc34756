"""
Retry Layer - bounded exponential backoff for outbound AI calls.

Transient provider failures (rate limits, overload, timeouts) are retried up
to ``max_attempts`` times, sleeping base, 2*base, 4*base... between attempts.
Anything else fails immediately. The sleep function is injectable so tests
never wait on a real clock.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

import httpx
from structlog import get_logger

from qc_billing.exceptions import RetryableProviderError, TerminalProviderError
from qc_billing.observability.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]

RETRYABLE_STATUS_CODES = frozenset({429, 500, 503, 504})
RETRYABLE_STATUS_NAMES = frozenset(
    {"RESOURCE_EXHAUSTED", "UNAVAILABLE", "INTERNAL", "DEADLINE_EXCEEDED"}
)
RETRYABLE_MESSAGE_MARKERS = (
    "rate limit",
    "quota",
    "overloaded",
    "temporarily",
    "resource exhausted",
)
TIMEOUT_ERRORS: tuple[type[BaseException], ...] = (
    TimeoutError,
    asyncio.TimeoutError,
    httpx.TimeoutException,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff base."""

    max_attempts: int = 3
    base_delay_seconds: float = 2.0

    def __post_init__(self) -> None:
        """Validate policy constraints."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1: {self.max_attempts}")
        if self.base_delay_seconds < 0:
            raise ValueError(f"base_delay_seconds must not be negative: {self.base_delay_seconds}")

    def delay_after(self, attempt: int) -> float:
        """Backoff before the next attempt, given the 1-based attempt that just failed."""
        return self.base_delay_seconds * (2 ** (attempt - 1))


@dataclass(frozen=True)
class Attempted(Generic[T]):
    """A successful result and how many attempts it took."""

    value: T
    attempts: int


def _status_code(exc: BaseException) -> int | None:
    for attr in ("code", "status_code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_retryable_error(exc: BaseException) -> bool:
    """
    Classify a provider exception as transient.

    Looks at timeout types, HTTP-style status codes, gRPC-style status
    names, then known phrases in the message.
    """
    if isinstance(exc, TIMEOUT_ERRORS):
        return True

    if _status_code(exc) in RETRYABLE_STATUS_CODES:
        return True

    status = getattr(exc, "status", None)
    if isinstance(status, str) and status.upper() in RETRYABLE_STATUS_NAMES:
        return True

    message = str(exc).lower()
    return any(marker in message for marker in RETRYABLE_MESSAGE_MARKERS)


async def invoke_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    operation_name: str,
    sleep: Sleep = asyncio.sleep,
) -> Attempted[T]:
    """
    Run ``operation`` until it succeeds, fails terminally, or runs out of attempts.

    Raises:
        TerminalProviderError: Non-retryable failure (after one attempt)
        RetryableProviderError: Every attempt failed with a transient error
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            value = await operation()
        except Exception as exc:
            retryable = is_retryable_error(exc)
            metrics.record_ai_attempt(operation_name, success=False)
            logger.warning(
                "ai_attempt_failed",
                operation=operation_name,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                retryable=retryable,
                error=str(exc),
                error_type=type(exc).__name__,
            )

            if not retryable:
                metrics.record_ai_invocation(operation_name, "terminal")
                raise TerminalProviderError(str(exc), attempt) from exc
            if attempt == policy.max_attempts:
                metrics.record_ai_invocation(operation_name, "exhausted")
                raise RetryableProviderError(str(exc), attempt) from exc

            delay = policy.delay_after(attempt)
            metrics.record_retry_delay(delay)
            logger.info(
                "ai_retry_scheduled",
                operation=operation_name,
                next_attempt=attempt + 1,
                delay_seconds=delay,
            )
            await sleep(delay)
        else:
            metrics.record_ai_attempt(operation_name, success=True)
            metrics.record_ai_invocation(operation_name, "success")
            if attempt > 1:
                logger.info("ai_attempt_recovered", operation=operation_name, attempts=attempt)
            return Attempted(value=value, attempts=attempt)

    raise TerminalProviderError("retry loop made no attempts", 0)
