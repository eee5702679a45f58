"""
Bounded retry around a single page fetch.

The pagination loop never counts attempts itself; it hands one fetch call to
``fetch_with_retry`` and gets back either a page or a terminal fault.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from crawlstream.errors import AuthenticationError, SourceError, SourceFault, TokenExpiredError
from crawlstream.observability import histogram, increment
logger = structlog.get_logger(__name__)

UNAUTHORIZED_STATUS = 401

# Faults that must surface on the first occurrence.
_NOT_RETRYABLE = (TokenExpiredError, AuthenticationError, asyncio.CancelledError)

SleepFunc = Callable[[float], Awaitable[Any]]

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times one page fetch is attempted and how long to wait in between."""

    max_attempts: int = 3
    delay_seconds: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")


def raise_for_status(status: int, reason: str = "") -> None:
    """
    Map an HTTP-style status to the fault taxonomy.

    401 means the credentials were rejected and is never retried. Every other
    non-2xx status, 4xx included, is a retryable ``SourceError``.
    """
    if 200 <= status < 300:
        return
    if status == UNAUTHORIZED_STATUS:
        raise TokenExpiredError(f"Authentication failed: HTTP {status} {reason}".rstrip())
    raise SourceError(f"Datasource returned HTTP {status} {reason}".rstrip(), status=status)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Page fetch failed, retrying",
        attempt=retry_state.attempt_number,
        delay=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(exc),
        error_type=type(exc).__name__ if exc else None,
    )


async def fetch_with_retry(
    fetch_one_page: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    sleep: SleepFunc = asyncio.sleep,
) -> T:
    """
    Call ``fetch_one_page`` until it succeeds or ``policy.max_attempts`` is reached.

    The pre-flight credential check goes through here as well, so a transient
    failure there is retried like any page fetch.

    Raises:
        TokenExpiredError, AuthenticationError: Immediately, without further attempts.
        SourceFault: After ``max_attempts`` consecutive failures, chained to the last error.
    """
    policy = policy or RetryPolicy()
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_fixed(policy.delay_seconds),
        retry=retry_if_not_exception_type(_NOT_RETRYABLE),
        before_sleep=_log_retry,
        sleep=sleep,
    )

    try:
        async for attempt in retrying:
            with attempt:
                start = time.monotonic()
                try:
                    result = await fetch_one_page()
                except TokenExpiredError:
                    increment("fetch_attempts", labels={"outcome": "unauthorized"})
                    raise
                except Exception:
                    increment("fetch_attempts", labels={"outcome": "error"})
                    raise
                increment("fetch_attempts", labels={"outcome": "success"})
                histogram("page_fetch_latency_seconds", time.monotonic() - start)
    except RetryError as e:
        last_error = e.last_attempt.exception()
        logger.error(
            "Page fetch retries exhausted",
            attempts=policy.max_attempts,
            error=str(last_error),
            error_type=type(last_error).__name__,
        )
        raise SourceFault(max_attempts=policy.max_attempts) from last_error

    return result
