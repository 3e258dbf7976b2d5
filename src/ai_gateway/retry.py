"""Bounded vendor-level retry for adapter HTTP calls.

The orchestrator never retries the same provider; this is the only place a
single vendor request is repeated.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from ai_gateway.errors import ProviderError

T = TypeVar("T")

RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})

logger = logging.getLogger(__name__)


def should_retry(exc: BaseException) -> bool:
    """Transport failures and retryable HTTP statuses are worth another try."""
    if isinstance(exc, ProviderError):
        return exc.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, httpx.TransportError)


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome is not None else None
    logger.info("Retrying vendor call (attempt %d) after %s", state.attempt_number, exc)


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    initial_delay_s: float = 0.5,
    backoff_multiplier: float = 2.0,
    max_delay_s: float = 5.0,
) -> T:
    """Run ``factory`` once plus up to ``max_retries`` retries with exponential backoff."""
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=initial_delay_s, exp_base=backoff_multiplier, max=max_delay_s),
        retry=retry_if_exception(should_retry),
        before_sleep=_log_retry,
        reraise=True,
    )
    return await retrying(factory)
