"""Bounded retry with exponential backoff for orchestration-level operations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from .cancel import CancelToken
from .events import EV_RETRY, FetchObserver, LoggingObserver
from .outcomes import (
    OUTCOME_TYPES,
    ChallengeDetected,
    ChallengeError,
    RetryExhaustedError,
    Success,
    TransientError,
    TransientFailure,
)

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (TransientError, asyncio.TimeoutError, aiohttp.ClientError)


@dataclass(frozen=True)
class RetryPolicy:
    """``max_attempts`` invocations, sleeping ``base ** attempt`` seconds between them.

    When ``timeout`` is set every attempt is bounded by
    ``timeout + timeout_step * (attempt - 1)`` seconds.
    """

    max_attempts: int = 3
    base: float = 2.0
    timeout: Optional[float] = None
    timeout_step: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def backoff(self, attempt: int) -> float:
        return float(self.base ** attempt)

    def attempt_timeout(self, attempt: int) -> Optional[float]:
        if self.timeout is None:
            return None
        return self.timeout + self.timeout_step * max(0, attempt - 1)


def _interpret(result: Any) -> Any:
    if isinstance(result, Success):
        return result.body
    if isinstance(result, ChallengeDetected):
        raise ChallengeError(result.resolved_url, result.verdict)
    if isinstance(result, TransientFailure):
        raise TransientError(result.cause, status=result.status)
    return result


async def with_retry(
    op: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    *,
    cancel: Optional[CancelToken] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
    observer: Optional[FetchObserver] = None,
) -> Any:
    """Run ``op`` until it succeeds, a non-retryable error occurs, or attempts run out.

    ``op`` is a zero-argument coroutine factory. Fetch outcomes are unwrapped:
    a challenge raises :class:`ChallengeError` on the spot, transient failures
    are retried, and anything else is returned as-is.
    """

    observer = observer or LoggingObserver(logger)
    last_exc: Optional[BaseException] = None
    for attempt in range(1, policy.max_attempts + 1):
        if cancel is not None:
            cancel.check()
        try:
            aw = op()
            limit = policy.attempt_timeout(attempt)
            if limit is not None:
                aw = asyncio.wait_for(aw, timeout=limit)
            if cancel is not None:
                result = await cancel.guard(aw)
            else:
                result = await aw
            if isinstance(result, OUTCOME_TYPES):
                return _interpret(result)
            return result
        except RETRYABLE_ERRORS as exc:
            last_exc = exc
            if attempt == policy.max_attempts:
                break
            delay = policy.backoff(attempt)
            observer.emit(EV_RETRY, label=label, attempt=attempt, delay=delay, error=str(exc) or type(exc).__name__)
            if cancel is not None:
                await cancel.guard(sleep(delay))
            else:
                await sleep(delay)
    raise RetryExhaustedError(label, policy.max_attempts, last_exc)


__all__ = ["RetryPolicy", "with_retry", "RETRYABLE_ERRORS"]
