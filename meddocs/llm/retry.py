"""
Retry Policy - bounded attempts with exponential back-off on rate limits

Policy used by structured extraction (defaults):
  - Max attempts:  3
  - Rate limited:  wait BASE × 2^(attempt-1) before the next attempt
                   (5 s after attempt 1, 10 s after attempt 2)
  - Other errors:  next attempt immediately (malformed JSON, timeouts,
                   connection errors)
  - Final attempt: the last exception propagates to the caller

Rate-limit detection is by exception type (openai.RateLimitError), an HTTP
status of 429, or an error message mentioning 429 / quota exhaustion, since
OpenAI-compatible gateways do not all raise the same class.

`sleep` is injectable so tests can assert the back-off sequence without
waiting.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

import openai

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

def is_rate_limit_error(exc: BaseException) -> bool:
    """True for HTTP 429 / quota exhaustion, however the provider reports it."""
    if isinstance(exc, openai.RateLimitError):
        return True
    if getattr(exc, "status_code", None) == 429 or getattr(exc, "status", None) == 429:
        return True
    message = str(exc).lower()
    return "429" in message or "quota" in message or "rate limit" in message


def exponential_backoff(base_seconds: float) -> Callable[[int], float]:
    """attempt (1-based) → base × 2^(attempt-1)."""
    def _delay(attempt: int) -> float:
        return base_seconds * (2 ** (attempt - 1))
    return _delay


def _always(exc: BaseException) -> bool:
    return True


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    """
    Composable retry loop.

    max_attempts    : total attempts including the first
    backoff         : attempt number → seconds to wait after that attempt
    should_back_off : errors that wait `backoff(attempt)` before retrying
    is_retryable    : errors that may be retried at all; others propagate
    sleep           : awaitable sleep (asyncio.sleep in production)
    """
    max_attempts:    int = 3
    backoff:         Callable[[int], float] = field(default_factory=lambda: exponential_backoff(5.0))
    should_back_off: Callable[[BaseException], bool] = is_rate_limit_error
    is_retryable:    Callable[[BaseException], bool] = _always
    sleep:           Callable[[float], Awaitable[None]] = asyncio.sleep

    def delay_for(self, exc: BaseException, attempt: int) -> float | None:
        """
        Seconds to wait before the next attempt, or None to stop retrying.
        `attempt` is the 1-based number of the attempt that just failed.
        """
        if attempt >= self.max_attempts or not self.is_retryable(exc):
            return None
        if self.should_back_off(exc):
            return self.backoff(attempt)
        return 0.0

    async def run(self, operation: Callable[[int], Awaitable[T]], label: str = "operation") -> T:
        """
        Call `operation(attempt)` until it succeeds or the policy gives up.
        Re-raises the last exception when attempts are exhausted.
        """
        attempt = 1
        while True:
            try:
                return await operation(attempt)
            except Exception as exc:
                delay = self.delay_for(exc, attempt)
                if delay is None:
                    logger.warning(
                        "%s failed | attempt=%d/%d error=%s: %s",
                        label, attempt, self.max_attempts, type(exc).__name__, exc,
                    )
                    raise
                logger.warning(
                    "%s retry | attempt=%d/%d delay=%.1fs error=%s: %s",
                    label, attempt, self.max_attempts, delay, type(exc).__name__, exc,
                )
                if delay > 0:
                    await self.sleep(delay)
                attempt += 1
