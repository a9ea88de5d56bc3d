from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from ingest.errors import FetchError, ParseError
from ingest.sources import SourceType


logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    retry_on: tuple[type[Exception], ...] = (FetchError, ParseError)


NO_RETRY = RetryPolicy(max_attempts=1)

RETRY_POLICIES: dict[str, RetryPolicy] = {
    SourceType.SECURITY_RSS: RetryPolicy(max_attempts=3),
    SourceType.WEATHER_GEOCMET: RetryPolicy(max_attempts=3),
}


def policy_for(source_type: str) -> RetryPolicy:
    return RETRY_POLICIES.get(source_type, NO_RETRY)


def backoff_delay(attempt: int, *, base_delay: float, max_delay: float) -> float:
    """Delay after the given 1-based failed attempt: base, 2x base, 4x base, capped."""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


async def run_with_retry(
    op: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    base_delay: float,
    max_delay: float,
    sleep: Sleep = asyncio.sleep,
    label: str = "",
) -> tuple[T, int]:
    """Run ``op`` until it succeeds or the policy is exhausted.

    Returns the result and the number of attempts used. The last retryable
    error propagates unchanged; anything outside ``retry_on`` is not retried.
    """
    attempt = 1
    while True:
        try:
            return await op(), attempt
        except policy.retry_on as e:
            if attempt >= policy.max_attempts:
                raise
            delay = backoff_delay(attempt, base_delay=base_delay, max_delay=max_delay)
            logger.warning(
                "%s attempt %d/%d failed (%s); retrying in %.1fs",
                label or "operation",
                attempt,
                policy.max_attempts,
                e,
                delay,
            )
            await sleep(delay)
            attempt += 1
