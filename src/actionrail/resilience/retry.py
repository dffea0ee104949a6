"""Bounded retry with fixed, linear or exponential backoff."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from actionrail.core.models import BackoffStrategy, RetryPolicy

logger = logging.getLogger("actionrail.retry")

T = TypeVar("T")

ShouldRetry = Callable[[BaseException], bool]
RetryCallback = Callable[[int, float, BaseException], Any]

# Categories that are never worth a second attempt.
NON_RETRYABLE = frozenset({"validation", "auth", "circuit_open", "cancelled", "state", "client", "lookup"})

_RETRY_ON_CATEGORIES = {
    "timeout": {"timeout"},
    "5xx": {"server"},
    "server": {"server"},
    "network": {"network"},
    "rate_limit": {"rate_limit"},
}


def is_retryable(error: BaseException) -> bool:
    """Default classifier: the error's own ``retryable`` flag."""
    return bool(getattr(error, "retryable", False))


def should_retry_for(retry_on: Iterable[str]) -> ShouldRetry:
    """Build a classifier from a policy's ``retry_on`` list.

    ``timeout``, ``5xx`` (or ``server``), ``network`` and ``rate_limit``
    select error categories; ``all`` retries anything not explicitly
    non-retryable.
    """
    selected = set(retry_on)
    retry_all = "all" in selected
    categories: set[str] = set()
    for name in selected:
        categories |= _RETRY_ON_CATEGORIES.get(name, set())

    def classify(error: BaseException) -> bool:
        category = getattr(error, "category", None)
        if category in NON_RETRYABLE:
            return False
        if retry_all:
            return True
        return category in categories

    return classify


def compute_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay in milliseconds before retry number ``attempt`` (1-based)."""
    if policy.strategy is BackoffStrategy.FIXED:
        return float(policy.backoff_ms)
    if policy.strategy is BackoffStrategy.LINEAR:
        return float(policy.backoff_ms * attempt)
    return float(policy.backoff_ms * 2 ** (attempt - 1))


class RetryCoordinator:
    def __init__(self, *, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
        self._sleep = sleep

    async def execute(
        self,
        op: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        should_retry: ShouldRetry | None = None,
        *,
        on_retry: RetryCallback | None = None,
    ) -> T:
        """Run ``op``, retrying up to ``policy.max_attempts`` more times.

        When the classifier rejects an error, or attempts run out, the last
        error is raised unchanged. ``on_retry(attempt, delay_ms, error)`` is
        called before each wait.
        """
        classify = should_retry or is_retryable
        attempt = 0
        while True:
            try:
                return await op()
            except Exception as exc:
                if attempt >= policy.max_attempts or not classify(exc):
                    if attempt:
                        logger.info("Giving up after %d retries: %s", attempt, exc)
                    raise
                attempt += 1
                delay_ms = compute_delay(policy, attempt)
                logger.info(
                    "Retry %d/%d in %.0fms after %s: %s",
                    attempt,
                    policy.max_attempts,
                    delay_ms,
                    type(exc).__name__,
                    exc,
                )
                if on_retry is not None:
                    on_retry(attempt, delay_ms, exc)
                await self._sleep(delay_ms / 1000)
