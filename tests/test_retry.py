"""
Tests for the uniform retry policy on remote calls.
"""

import asyncio

import pytest

from cardsync.errors import RemoteError, RemoteNotConfiguredError
from cardsync.remote.retry import RetryPolicy


class Flaky:
    """Callable failing with the given errors before returning 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def policy(sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=8.0, jitter=0, timeout=None, sleep=fake_sleep)


async def test_retries_transient_errors_then_succeeds(policy, sleeps):
    call = Flaky(RemoteError(503, "unavailable"), RemoteError(500, "oops"))
    assert await policy.run(call) == "ok"
    assert call.calls == 3
    assert sleeps == [1.0, 2.0]


async def test_permanent_error_is_not_retried(policy, sleeps):
    call = Flaky(RemoteError(400, "bad request"))
    with pytest.raises(RemoteError) as exc_info:
        await policy.run(call)
    assert exc_info.value.status == 400
    assert call.calls == 1
    assert sleeps == []


async def test_missing_configuration_is_not_retried(policy, sleeps):
    call = Flaky(RemoteNotConfiguredError("MONGO_URI not found"))
    with pytest.raises(RemoteNotConfiguredError):
        await policy.run(call)
    assert call.calls == 1
    assert sleeps == []


async def test_gives_up_with_last_error(policy):
    call = Flaky(*[RemoteError(502, f"attempt {i}") for i in range(5)])
    with pytest.raises(RemoteError) as exc_info:
        await policy.run(call)
    assert exc_info.value.message == "attempt 2"
    assert call.calls == 3


async def test_retry_after_wins(policy, sleeps):
    call = Flaky(RemoteError(429, "slow down", retry_after=3.0))
    await policy.run(call)
    assert sleeps == [3.0]


def test_delay_is_capped():
    policy = RetryPolicy(base_delay=1.0, max_delay=8.0, jitter=0)
    assert policy.delay_for(10, RemoteError(500, "x")) == 8.0
    assert policy.delay_for(0, RemoteError(429, "x", retry_after=60)) == 8.0


async def test_timeout_is_reported_as_retryable_504(sleeps):
    async def hang():
        await asyncio.sleep(10)

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    policy = RetryPolicy(max_attempts=2, jitter=0, timeout=0.01, sleep=fake_sleep)
    with pytest.raises(RemoteError) as exc_info:
        await policy.run(hang, "list card")
    assert exc_info.value.status == 504
    assert exc_info.value.retryable
    assert len(sleeps) == 1
