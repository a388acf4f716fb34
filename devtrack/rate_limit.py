"""
Rate Governor

Two independent mechanisms wrapped around every gateway call:

- TokenRateTracker: preemptive. Keeps a trailing 60s window of input-token
  samples per provider and sleeps before a request that would push the window
  over the provider's budget.
- with_retry: reactive. Retries rate-limit failures with backoff; every other
  failure propagates immediately.

Clock and sleep are injectable so both can be driven deterministically.
"""

import asyncio
import logging
import math
import time
from collections import deque
from typing import Awaitable, Callable, Optional, TypeVar

from .llm_client import Message, RateLimitError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

WINDOW_SECONDS = 60.0
MAX_WAIT_SECONDS = 30.0
CHARS_PER_TOKEN = 4

# Input tokens per minute, divided by expected concurrency with a buffer
DEFAULT_LIMITS: dict[str, int] = {
    "anthropic": 130_000,
    "openai": 300_000,
    "google": 400_000,
}

MAX_RETRIES = 3
BASE_DELAY = 5.0  # seconds; 5s, 15s, 45s


def estimate_tokens(messages: list[Message]) -> int:
    """Rough input size: one token per four characters."""
    return sum(math.ceil(len(m.content or "") / CHARS_PER_TOKEN) for m in messages)


class TokenRateTracker:
    """
    Per-provider trailing-window token budget.

    The window is only touched by append/prune between awaits, so interleaved
    coroutines sharing one tracker never observe a half-updated window.
    """

    def __init__(
        self,
        limits: Optional[dict[str, int]] = None,
        window_seconds: float = WINDOW_SECONDS,
        max_wait: float = MAX_WAIT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.limits = dict(DEFAULT_LIMITS if limits is None else limits)
        self.window_seconds = window_seconds
        self.max_wait = max_wait
        self._clock = clock
        self._sleep = sleep
        self._windows: dict[str, deque] = {}

    def _prune(self, provider: str, now: float) -> deque:
        window = self._windows.setdefault(provider, deque())
        cutoff = now - self.window_seconds
        while window and window[0][1] < cutoff:
            window.popleft()
        return window

    def recent_tokens(self, provider: str) -> int:
        window = self._prune(provider, self._clock())
        return sum(tokens for tokens, _ in window)

    def record_usage(self, provider: str, input_tokens: int):
        """Record the actual input-token usage of a completed call."""
        now = self._clock()
        window = self._prune(provider, now)
        window.append((input_tokens, now))

    async def wait_if_needed(self, provider: str, estimated_tokens: int) -> float:
        """
        Sleep if *estimated_tokens* would exceed the provider budget.

        Returns the number of seconds waited (0.0 when the call may proceed).
        """
        limit = self.limits.get(provider)
        if not limit:
            return 0.0

        now = self._clock()
        window = self._prune(provider, now)
        recent = sum(tokens for tokens, _ in window)
        if recent + estimated_tokens <= limit:
            return 0.0

        if window:
            oldest_ts = window[0][1]
            wait = oldest_ts + self.window_seconds - now + 1.0
        else:
            wait = 10.0
        wait = min(max(wait, 0.0), self.max_wait)

        logger.warning(
            "Token rate approaching limit for %s (%d/%d in last %ds). Waiting %.1fs...",
            provider, recent, limit, int(self.window_seconds), wait,
        )
        await self._sleep(wait)
        return wait


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    label: str,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Call *fn*, retrying rate-limit failures up to *max_retries* times.

    Delay prefers the provider's retry-after, otherwise base * 3^attempt.
    Raises RetryExhaustedError naming *label* once retries run out.
    """
    for attempt in range(max_retries + 1):
        try:
            return await fn()
        except RateLimitError as e:
            if attempt >= max_retries:
                raise RetryExhaustedError(
                    f"Exhausted {max_retries} retries for {label}: {e}",
                    provider=e.provider,
                    status_code=e.status_code,
                ) from e

            delay = e.retry_after if e.retry_after is not None else base_delay * (3 ** attempt)
            logger.warning(
                "Rate limited (%s), retry %d/%d in %.1fs...",
                label, attempt + 1, max_retries, delay,
            )
            await sleep(delay)

    raise RetryExhaustedError(f"Exhausted {max_retries} retries for {label}")
