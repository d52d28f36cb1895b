"""Bounded exponential backoff with jitter for provider calls."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from journeys.config import (
    MEDIA_RETRY_INITIAL_DELAY_SECONDS,
    RETRY_INITIAL_DELAY_SECONDS,
    RETRY_JITTER,
    RETRY_MAX_DELAY_SECONDS,
    RETRY_MAX_RETRIES,
)
from journeys.errors import ProviderErrorKind, to_provider_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_KINDS = frozenset({ProviderErrorKind.RATE_LIMIT, ProviderErrorKind.TRANSIENT})


def is_retryable(error: BaseException) -> bool:
    """Configuration, quota, validation and timeout failures are never retried."""
    return to_provider_error(error, "unknown").kind in RETRYABLE_KINDS


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = RETRY_MAX_RETRIES
    initial_delay: float = RETRY_INITIAL_DELAY_SECONDS
    max_delay: float = RETRY_MAX_DELAY_SECONDS
    jitter: float = RETRY_JITTER
    should_retry: Callable[[BaseException], bool] = field(default=is_retryable)


DEFAULT_RETRY_POLICY = RetryPolicy()
MEDIA_RETRY_POLICY = RetryPolicy(initial_delay=MEDIA_RETRY_INITIAL_DELAY_SECONDS)


def backoff_delay(attempt: int, policy: RetryPolicy, uniform: Callable[[float, float], float] = random.uniform) -> float:
    """Delay before retry number ``attempt`` (0-based), jittered by +/- policy.jitter."""
    delay = min(policy.initial_delay * (2 ** attempt), policy.max_delay)
    return max(0.0, delay + delay * policy.jitter * uniform(-1.0, 1.0))


class wait_jittered_exponential(wait_base):
    """Tenacity wait strategy implementing backoff_delay."""

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        return backoff_delay(retry_state.attempt_number - 1, self.policy)


def _log_before_sleep(label: str) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "retry_scheduled",
            extra={
                "operation": label,
                "attempt": retry_state.attempt_number,
                "delay_seconds": round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
                "error": str(error),
            },
        )

    return log


async def run_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds, the policy refuses, or retries run out.

    The error raised on give-up is the last attempt's error, unchanged.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_retries + 1),
        wait=wait_jittered_exponential(policy),
        retry=retry_if_exception(policy.should_retry),
        before_sleep=_log_before_sleep(label),
        sleep=sleep,
        reraise=True,
    )
    return await retrying(operation)
