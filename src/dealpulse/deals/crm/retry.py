"""Bounded exponential-backoff retry for remote CRM calls.

Wraps any zero-argument coroutine factory with tenacity's AsyncRetrying,
following the stop_after_attempt + wait_exponential pattern used for the
other external API clients:

- Attempts the operation up to max_retries + 1 times in total.
- Sleeps base_delay * 2**i seconds between attempt i and i + 1
  (1s, 2s, 4s with the defaults).
- Re-raises the last error unchanged once the budget is spent.
- Never retries NonRetryableError (token invalidation, bad OAuth state,
  4xx client errors).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.dealpulse.errors import NonRetryableError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0


def _log_before_sleep(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    logger.warning(
        "crm.retry_scheduled",
        attempt=retry_state.attempt_number,
        sleep_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(error) if error else None,
    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` with bounded exponential backoff.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt.
        max_retries: Retries after the first attempt (total attempts = max_retries + 1).
        base_delay: Delay in seconds before the first retry; doubles each retry.
        sleep: Async sleep function. Tests inject a recorder here.

    Returns:
        The operation's result from the first successful attempt.

    Raises:
        The last exception raised by ``operation`` once attempts are exhausted,
        or any NonRetryableError immediately.
    """
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=base_delay, exp_base=2),
        retry=retry_if_not_exception_type(NonRetryableError),
        before_sleep=_log_before_sleep,
        sleep=sleep,
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            return await operation()

    # AsyncRetrying with reraise=True either returns or raises above
    raise RuntimeError("retry loop exited without a result")  # pragma: no cover
