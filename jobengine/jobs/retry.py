"""Retry with exponential backoff for calls to flaky external services."""

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from jobengine.jobs.errors import FatalServiceError, TransientServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Signatures of transient failures in errors raised by code we don't control
_TRANSIENT_PATTERN = re.compile(
    r"\b(429|502|503|504)\b|rate.?limit|resource_exhausted|timed? ?out"
    r"|connection (reset|refused|aborted)|econnreset",
    re.IGNORECASE,
)

_TRANSIENT_TYPES = (
    TransientServiceError,
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    asyncio.TimeoutError,
    ConnectionResetError,
)


def is_retryable(exc: BaseException) -> bool:
    """Classify an error as transient (retry) or fatal (raise at once)."""
    if isinstance(exc, FatalServiceError):
        return False
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    return bool(_TRANSIENT_PATTERN.search(str(exc)))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    jitter: float = 0.0

    def delay(self, attempt: int) -> float:
        """Delay after failed attempt ``attempt`` (0-based): base * 2**attempt, plus jitter."""
        wait = self.base_delay * (2 ** attempt)
        if self.jitter:
            wait += random.uniform(0, self.jitter)
        return wait


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    *,
    jitter: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    retryable: Callable[[BaseException], bool] = is_retryable,
    label: Optional[str] = None,
) -> T:
    """Call ``fn`` until it succeeds, a fatal error occurs or attempts run out.

    The last error is re-raised after ``max_attempts`` transient failures.
    Fatal errors are re-raised on first occurrence without sleeping.
    """
    policy = RetryPolicy(max_attempts=max_attempts, base_delay=base_delay, jitter=jitter)
    return await retry_call(fn, policy, sleep=sleep, retryable=retryable, label=label)


async def retry_call(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    retryable: Callable[[BaseException], bool] = is_retryable,
    label: Optional[str] = None,
) -> T:
    if policy.max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(policy.max_attempts):
        try:
            return await fn()
        except Exception as e:
            if not retryable(e) or attempt == policy.max_attempts - 1:
                raise
            wait = policy.delay(attempt)
            logger.warning(
                "%s failed with transient error (%s), attempt %d/%d, retrying in %.2fs",
                label or "call", e, attempt + 1, policy.max_attempts, wait,
            )
            await sleep(wait)
    raise AssertionError("unreachable")
