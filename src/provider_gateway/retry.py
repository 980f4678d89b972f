from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from .errors import VendorHTTPError

log = structlog.get_logger()

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, VendorHTTPError):
        return exc.retryable
    return isinstance(exc, Exception)


class RetryPolicy:
    """Bounded exponential backoff around one vendor call.

    Up to ``max_retries + 1`` attempts. The delay after failed attempt ``k``
    (0-based) is ``base_delay_seconds * 2**k``: 1s, 2s, 4s, 8s by default.
    ``max_delay_seconds`` and ``jitter`` are opt-in; without them the schedule
    is plain doubling.
    """

    def __init__(
        self,
        max_retries: int = 3,
        *,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float | None = None,
        jitter: bool = False,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
        name: str = "default",
    ):
        self.max_retries = max(0, int(max_retries))
        self.base_delay_seconds = max(0.0, float(base_delay_seconds))
        self.max_delay_seconds = max_delay_seconds
        self.jitter = jitter
        self.name = name
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep
        self.on_retry = on_retry

    def compute_delay(self, attempt_index: int) -> float:
        delay = self.base_delay_seconds * (2**attempt_index)
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        if self.jitter and delay > 0:
            delay = random.uniform(0.0, delay)
        return delay

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                if not is_retryable(e) or attempt >= self.max_retries:
                    raise
                delay = self.compute_delay(attempt)
                log.warning(
                    "provider_retry",
                    provider=self.name,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay_seconds=delay,
                    error=str(e),
                )
                if self.on_retry is not None:
                    self.on_retry(attempt, e, delay)
                await self._sleep(delay)
                attempt += 1
