from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from .errors import ProviderError, RateLimitError

log = structlog.get_logger()

T = TypeVar("T")


class RetryPolicy:
    """Retries operations whose `ProviderError` reports `is_retryable`."""

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_initial_seconds: float = 1.0,
        backoff_max_seconds: float = 8.0,
        *,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        jitter: bool = True,
    ):
        self.max_attempts = max(1, max_attempts)
        self._backoff_initial_seconds = max(0.0, backoff_initial_seconds)
        self._backoff_max_seconds = max(self._backoff_initial_seconds, backoff_max_seconds)
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep
        self._jitter = jitter

    def compute_backoff(self, attempt_index: int) -> float:
        # attempt_index: 0-based retry count (0 for first retry)
        base = float(min(self._backoff_max_seconds, self._backoff_initial_seconds * (2**attempt_index)))
        if not self._jitter or base <= 0:
            return base
        return base + float(random.uniform(0.0, min(0.25, base * 0.1)))

    def delay_for(self, error: ProviderError, attempt_index: int) -> float:
        if isinstance(error, RateLimitError) and error.retry_after_seconds is not None:
            return max(0.0, error.retry_after_seconds)
        return self.compute_backoff(attempt_index)

    async def run(self, operation: Callable[[], Awaitable[T]], *, max_attempts: int | None = None) -> T:
        attempts = max(1, max_attempts if max_attempts is not None else self.max_attempts)
        for attempt in range(attempts):
            try:
                return await operation()
            except ProviderError as e:
                if not e.is_retryable or attempt >= attempts - 1:
                    raise
                delay = self.delay_for(e, attempt)
                log.warning(
                    "provider_call_retrying",
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    kind=e.kind,
                    delay_seconds=round(delay, 3),
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover
