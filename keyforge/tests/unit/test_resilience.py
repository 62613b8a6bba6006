from __future__ import annotations

import asyncio

import pytest

from keyforge.core.errors import ValidationError, VaultBackendError
from keyforge.services.resilience import RetryPolicy, retry_async


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1),
    )
    assert result == "ok"
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_client_errors() -> None:
    calls = {"count": 0}

    async def rejected() -> None:
        calls["count"] += 1
        raise ValidationError("bad input")

    with pytest.raises(ValidationError):
        await retry_async(rejected, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_retry_async_retries_upstream_5xx_until_exhausted() -> None:
    calls = {"count": 0}

    async def failing() -> None:
        calls["count"] += 1
        raise VaultBackendError("unavailable", status=503)

    with pytest.raises(VaultBackendError):
        await retry_async(failing, policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1))
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_fixed_delay_sleeps_the_same_interval() -> None:
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    async def always_down() -> None:
        raise ConnectionError("refused")

    with pytest.raises(ConnectionError):
        await retry_async(
            always_down,
            policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=2000, fixed_delay=True),
            sleep=record_sleep,
        )
    assert sleeps == [2.0, 2.0]


@pytest.mark.asyncio
async def test_each_attempt_is_bounded_by_timeout() -> None:
    async def slow() -> None:
        await asyncio.sleep(1)

    with pytest.raises(asyncio.TimeoutError):
        await retry_async(slow, policy=RetryPolicy(timeout_ms=10, max_attempts=1, backoff_ms=1))
