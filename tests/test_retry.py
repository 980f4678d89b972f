import pytest

from provider_gateway.errors import VendorHTTPError, VendorTransportError
from provider_gateway.retry import RetryPolicy, is_retryable


def _recording_sleeper():
    sleeps: list[float] = []

    async def _sleep(delay: float) -> None:
        sleeps.append(delay)

    return sleeps, _sleep


def test_auth_and_bad_request_are_not_retryable():
    assert not is_retryable(VendorHTTPError(400))
    assert not is_retryable(VendorHTTPError(401))
    assert is_retryable(VendorHTTPError(429))
    assert is_retryable(VendorHTTPError(503))
    assert is_retryable(VendorTransportError("boom"))


@pytest.mark.asyncio
async def test_non_retryable_error_is_attempted_once():
    sleeps, sleeper = _recording_sleeper()
    calls = 0

    async def op():
        nonlocal calls
        calls += 1
        raise VendorHTTPError(401, "bad key")

    with pytest.raises(VendorHTTPError):
        await RetryPolicy(3, sleeper=sleeper).run(op)
    assert calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_retryable_error_exhausts_attempts_with_doubling_delays():
    sleeps, sleeper = _recording_sleeper()
    retried: list[int] = []
    calls = 0

    async def op():
        nonlocal calls
        calls += 1
        raise VendorHTTPError(500)

    policy = RetryPolicy(3, sleeper=sleeper, on_retry=lambda attempt, _e, _d: retried.append(attempt))
    with pytest.raises(VendorHTTPError) as ei:
        await policy.run(op)
    assert ei.value.status_code == 500
    assert calls == 4
    assert sleeps == [1.0, 2.0, 4.0]
    assert retried == [0, 1, 2]


@pytest.mark.asyncio
async def test_success_after_transient_failures():
    sleeps, sleeper = _recording_sleeper()
    calls = 0

    async def op():
        nonlocal calls
        calls += 1
        if calls < 3:
            raise VendorTransportError("reset")
        return "ok"

    assert await RetryPolicy(3, sleeper=sleeper).run(op) == "ok"
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_zero_retries_means_single_attempt():
    sleeps, sleeper = _recording_sleeper()
    calls = 0

    async def op():
        nonlocal calls
        calls += 1
        raise VendorHTTPError(502)

    with pytest.raises(VendorHTTPError):
        await RetryPolicy(0, sleeper=sleeper).run(op)
    assert calls == 1
    assert sleeps == []


def test_delay_cap_and_jitter_are_opt_in():
    assert [RetryPolicy().compute_delay(k) for k in range(5)] == [1.0, 2.0, 4.0, 8.0, 16.0]

    capped = RetryPolicy(max_delay_seconds=3.0)
    assert [capped.compute_delay(k) for k in range(4)] == [1.0, 2.0, 3.0, 3.0]

    jittered = RetryPolicy(jitter=True, max_delay_seconds=4.0)
    for k in range(6):
        assert 0.0 <= jittered.compute_delay(k) <= 4.0
