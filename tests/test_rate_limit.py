"""Token window and retry behaviour driven by a fake clock."""

import pytest

from devtrack.llm_client import Message, ProviderError, RateLimitError, RetryExhaustedError
from devtrack.rate_limit import MAX_RETRIES, TokenRateTracker, estimate_tokens, with_retry


class ManualClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class Sleeps:
    """Records requested delays and advances the clock by them."""

    def __init__(self, clock=None):
        self.clock = clock
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.now += seconds


def test_estimate_tokens_is_four_chars_per_token():
    assert estimate_tokens([Message("user", "a" * 400)]) == 100
    assert estimate_tokens([Message("user", "abcde"), Message("assistant", "")]) == 2


class TestTokenRateTracker:

    @pytest.mark.asyncio
    async def test_requests_over_budget_wait(self):
        clock = ManualClock()
        tracker = TokenRateTracker(limits={"anthropic": 100}, clock=clock, sleep=Sleeps())

        waits = []
        for _ in range(3):
            waits.append(await tracker.wait_if_needed("anthropic", 80))
            tracker.record_usage("anthropic", 80)

        assert waits[0] == 0.0
        assert waits[1] > 0
        assert waits[2] > 0

    @pytest.mark.asyncio
    async def test_wait_is_until_oldest_sample_leaves_window(self):
        clock = ManualClock()
        sleeps = Sleeps()
        tracker = TokenRateTracker(limits={"openai": 100}, max_wait=120, clock=clock, sleep=sleeps)

        tracker.record_usage("openai", 90)
        clock.now += 20

        waited = await tracker.wait_if_needed("openai", 20)

        assert waited == pytest.approx(41.0)
        assert sleeps.delays == [waited]

    @pytest.mark.asyncio
    async def test_wait_is_capped(self):
        clock = ManualClock()
        tracker = TokenRateTracker(limits={"openai": 100}, max_wait=30, clock=clock, sleep=Sleeps())
        tracker.record_usage("openai", 100)

        assert await tracker.wait_if_needed("openai", 10) == 30

    @pytest.mark.asyncio
    async def test_empty_window_over_budget_waits_fixed_delay(self):
        tracker = TokenRateTracker(limits={"google": 100}, clock=ManualClock(), sleep=Sleeps())

        assert await tracker.wait_if_needed("google", 500) == 10.0

    @pytest.mark.asyncio
    async def test_old_samples_expire(self):
        clock = ManualClock()
        tracker = TokenRateTracker(limits={"anthropic": 100}, clock=clock, sleep=Sleeps())
        tracker.record_usage("anthropic", 100)

        clock.now += 61

        assert tracker.recent_tokens("anthropic") == 0
        assert await tracker.wait_if_needed("anthropic", 100) == 0.0

    @pytest.mark.asyncio
    async def test_unknown_provider_never_waits(self):
        tracker = TokenRateTracker(limits={}, clock=ManualClock(), sleep=Sleeps())

        assert await tracker.wait_if_needed("mystery", 10**9) == 0.0

    @pytest.mark.asyncio
    async def test_providers_are_tracked_independently(self):
        tracker = TokenRateTracker(limits={"anthropic": 100, "openai": 100}, clock=ManualClock(), sleep=Sleeps())
        tracker.record_usage("anthropic", 100)

        assert await tracker.wait_if_needed("openai", 50) == 0.0


class Flaky:
    def __init__(self, failures: int, error=None):
        self.failures = failures
        self.error = error or RateLimitError("429", provider="openai", status_code=429)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestWithRetry:

    @pytest.mark.asyncio
    async def test_succeeds_after_max_retries_failures(self):
        fn = Flaky(MAX_RETRIES)
        sleeps = Sleeps()

        assert await with_retry(fn, "OpenAI gpt-5.2", sleep=sleeps) == "ok"
        assert fn.calls == MAX_RETRIES + 1
        assert sleeps.delays == [5.0, 15.0, 45.0]

    @pytest.mark.asyncio
    async def test_one_failure_too_many_exhausts(self):
        fn = Flaky(MAX_RETRIES + 1)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await with_retry(fn, "OpenAI gpt-5.2", sleep=Sleeps())

        assert str(exc_info.value).startswith(f"Exhausted {MAX_RETRIES} retries for OpenAI gpt-5.2")
        assert fn.calls == MAX_RETRIES + 1

    @pytest.mark.asyncio
    async def test_retry_after_is_honoured(self):
        fn = Flaky(1, RateLimitError("429", status_code=429, retry_after=2.5))
        sleeps = Sleeps()

        await with_retry(fn, "x", sleep=sleeps)

        assert sleeps.delays == [2.5]

    @pytest.mark.asyncio
    async def test_non_rate_limit_errors_are_not_retried(self):
        fn = Flaky(1, ProviderError("bad", status_code=400))

        with pytest.raises(ProviderError):
            await with_retry(fn, "x", sleep=Sleeps())

        assert fn.calls == 1
