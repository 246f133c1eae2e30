"""Tests for the retry policy."""

import pytest

from daybook.daemon.error_handling import CaptureError, RetryPolicy


def test_delays_grow_and_are_capped():
    policy = RetryPolicy(base_delay=2.0, max_delay=10.0, jitter=False)

    assert [policy.calculate_delay(n) for n in range(1, 5)] == [2.0, 4.0, 8.0, 10.0]


def test_jitter_stays_within_bounds():
    policy = RetryPolicy(base_delay=4.0, jitter=True)

    for _ in range(50):
        assert 2.0 <= policy.calculate_delay(1) <= 6.0


@pytest.mark.asyncio
async def test_execute_retries_until_success():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise CaptureError("try again")
        return "ok"

    policy = RetryPolicy(max_attempts=3, base_delay=0, jitter=False)
    assert await policy.execute(flaky) == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_execute_gives_up_after_max_attempts():
    attempts = []

    async def broken():
        raise CaptureError("still broken")

    policy = RetryPolicy(max_attempts=2, base_delay=0, jitter=False)
    with pytest.raises(CaptureError, match="still broken"):
        await policy.execute(broken, on_attempt=attempts.append)
    assert attempts == [1, 2]


@pytest.mark.asyncio
async def test_execute_stops_on_non_retryable_error():
    attempts = []

    async def fatal():
        raise CaptureError("missing binary", transient=False)

    policy = RetryPolicy(max_attempts=5, base_delay=0, jitter=False)
    with pytest.raises(CaptureError):
        await policy.execute(
            fatal,
            should_retry=lambda e: e.transient,
            on_attempt=attempts.append
        )
    assert attempts == [1]
