"""Tests for retry with backoff and cooperative cancellation."""

import asyncio

import pytest

from errors import ErrorKind, OperationCancelled, RetryExhaustedError
from services.retry import backoff_delay, retry_kwargs, with_retry
from utils.cancellation import CancellationToken, ensure_token


def test_backoff_delay_grows_and_caps():
    """Test that delays grow by the multiplier and stop at the maximum."""
    delays = [backoff_delay(i, 1.0, 5.0, 2.0) for i in range(5)]
    assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_succeeds_on_third_attempt(sleep):
    """Test that an operation failing twice is invoked three times and returns its value."""
    calls = []

    async def op():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("flaky")
        return "ok"

    result = await with_retry(op, max_attempts=3, initial_delay=1.0, sleep=sleep)
    assert result == "ok"
    assert len(calls) == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_exhausted_raises_with_cause(sleep):
    """Test that the last error is chained once every attempt failed."""
    async def op():
        raise ValueError("boom")

    with pytest.raises(RetryExhaustedError) as info:
        await with_retry(op, max_attempts=2, context="Tavily search", sleep=sleep)

    err = info.value
    assert err.kind is ErrorKind.UPSTREAM_FAILED
    assert err.attempts == 2
    assert isinstance(err.__cause__, ValueError)
    assert "Tavily search" in str(err)
    assert len(sleep.delays) == 1


@pytest.mark.asyncio
async def test_cancelled_token_stops_retrying(sleep):
    """Test that a failure seen after cancellation is re-raised without sleeping or retrying."""
    token = CancellationToken()
    token.cancel()
    calls = []

    async def op():
        calls.append(1)
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        await with_retry(op, max_attempts=3, cancel=token, sleep=sleep)
    assert len(calls) == 1
    assert sleep.delays == []


def test_retry_kwargs_come_from_settings(cfg, sleep):
    """Test that retry settings map onto with_retry keyword arguments."""
    kwargs = retry_kwargs(cfg, None, "label", sleep)
    assert kwargs["max_attempts"] == cfg.retry_max_attempts
    assert kwargs["initial_delay"] == cfg.retry_initial_delay_sec
    assert kwargs["context"] == "label"
    assert kwargs["sleep"] is sleep


@pytest.mark.asyncio
async def test_guard_abandons_work_on_cancel():
    """Test that guard() raises as soon as the token fires and cancels the pending work."""
    token = CancellationToken()
    work = asyncio.ensure_future(asyncio.sleep(10))

    async def fire():
        await asyncio.sleep(0.01)
        token.cancel("timeout")

    asyncio.ensure_future(fire())
    with pytest.raises(OperationCancelled) as info:
        await token.guard(work)

    assert info.value.kind is ErrorKind.TIMEOUT
    for _ in range(3):
        await asyncio.sleep(0)
    assert work.cancelled()


@pytest.mark.asyncio
async def test_guard_returns_result():
    """Test that guard() passes the awaited value through when not cancelled."""
    token = ensure_token(None)

    async def value():
        return 42

    assert await token.guard(value()) == 42


def test_first_cancel_reason_wins():
    """Test that a later cancel does not overwrite the reason, so a timeout stays a timeout."""
    token = CancellationToken()
    token.cancel("timeout")
    token.cancel("client disconnected")

    with pytest.raises(OperationCancelled) as info:
        token.raise_if_cancelled()
    assert token.reason == "timeout"
    assert info.value.kind is ErrorKind.TIMEOUT
