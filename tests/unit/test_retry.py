import pytest

from bioflow.errors import PermanentProviderError, TransientBackendError
from bioflow.utils.retry import call_with_retry, compute_backoff


def test_compute_backoff_grows_and_caps():
    assert compute_backoff(1, base=2.0, jitter=0.0) == 2.0
    assert compute_backoff(3, base=2.0, jitter=0.0) == 8.0
    assert compute_backoff(10, base=2.0, jitter=0.0, cap=30.0) == 30.0
    assert compute_backoff(5000, base=2.0, jitter=0.0, cap=60.0) == 60.0


def test_compute_backoff_jitter_is_bounded():
    for _ in range(50):
        delay = compute_backoff(2, base=2.0, jitter=0.5)
        assert 4.0 <= delay <= 4.5


@pytest.mark.asyncio
async def test_call_with_retry_recovers_from_transient_errors():
    calls = []
    sleeps = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise TransientBackendError("busy")
        return "done"

    async def fake_sleep(delay):
        sleeps.append(delay)

    result = await call_with_retry(flaky, max_attempts=3, jitter=0.0, sleep=fake_sleep)
    assert result == "done"
    assert len(calls) == 3
    assert sleeps == [2.0, 4.0]


@pytest.mark.asyncio
async def test_call_with_retry_does_not_retry_permanent_errors():
    calls = []

    async def broken():
        calls.append(1)
        raise PermanentProviderError("bad request")

    async def fake_sleep(delay):
        raise AssertionError("should not sleep")

    with pytest.raises(PermanentProviderError):
        await call_with_retry(broken, max_attempts=5, sleep=fake_sleep)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_call_with_retry_gives_up_after_max_attempts():
    calls = []

    async def always_busy():
        calls.append(1)
        raise TransientBackendError("busy")

    async def fake_sleep(delay):
        pass

    with pytest.raises(TransientBackendError):
        await call_with_retry(always_busy, max_attempts=2, sleep=fake_sleep)
    assert len(calls) == 2
