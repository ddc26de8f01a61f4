"""
Retry policy for remote calls.

One policy object is applied uniformly to every remote request: a bounded
per-attempt timeout, then exponential backoff (base delay doubling per
attempt, capped, with jitter) for retryable failures only. A server-provided
Retry-After wins over the computed delay.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from cardsync.config import (
    REQUEST_BASE_DELAY_S,
    REQUEST_MAX_ATTEMPTS,
    REQUEST_MAX_DELAY_S,
    REQUEST_TIMEOUT_S,
)
from cardsync.errors import RemoteError, RemoteNotConfiguredError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = REQUEST_MAX_ATTEMPTS
    base_delay: float = REQUEST_BASE_DELAY_S
    max_delay: float = REQUEST_MAX_DELAY_S
    jitter: float = 0.1          # fraction of the delay added at random
    timeout: Optional[float] = REQUEST_TIMEOUT_S
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def delay_for(self, attempt: int, error: RemoteError) -> float:
        """Delay before retry number `attempt` (0-based)."""
        if error.retry_after is not None and error.retry_after >= 0:
            return min(error.retry_after, self.max_delay)
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay

    async def run(self, call: Callable[[], Awaitable[T]], description: str = "remote call") -> T:
        """
        Run `call` under this policy.

        Timeouts are reported as a retryable 504.

        Raises:
            RemoteError: The last error once attempts are exhausted, or
                immediately for non-retryable statuses
        """
        last_error: Optional[RemoteError] = None
        for attempt in range(self.max_attempts):
            try:
                if self.timeout:
                    return await asyncio.wait_for(call(), timeout=self.timeout)
                return await call()
            except asyncio.TimeoutError:
                last_error = RemoteError(504, f"{description} timed out after {self.timeout}s")
            except RemoteNotConfiguredError:
                raise
            except RemoteError as e:
                if not e.retryable:
                    raise
                last_error = e

            if attempt + 1 < self.max_attempts:
                delay = self.delay_for(attempt, last_error)
                logger.warning(f"{description} failed ({last_error.status}), retrying in {delay:.2f}s")
                await self.sleep(delay)

        raise last_error


NO_RETRY = RetryPolicy(max_attempts=1, timeout=None)
