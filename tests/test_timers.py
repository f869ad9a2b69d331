"""Tests for the deadline-bounded polling helper."""

from __future__ import annotations

import asyncio
import time

import pytest

from kobold_switcher.runner.errors import WaitTimeoutError
from kobold_switcher.runner.timers import wait_for


@pytest.mark.asyncio
async def test_returns_once_predicate_holds() -> None:
    calls = 0

    async def predicate() -> bool:
        nonlocal calls
        calls += 1
        return calls >= 3

    await wait_for(predicate, timeout=2.0, interval=0.01)

    assert calls == 3


@pytest.mark.asyncio
async def test_times_out_when_predicate_never_holds() -> None:
    async def predicate() -> bool:
        return False

    with pytest.raises(WaitTimeoutError, match="Timeout reached after 0.1s"):
        await wait_for(predicate, timeout=0.1, interval=0.02)


@pytest.mark.asyncio
async def test_slow_predicate_cannot_overrun_deadline() -> None:
    async def predicate() -> bool:
        await asyncio.sleep(10)
        return True

    started = time.monotonic()
    with pytest.raises(WaitTimeoutError):
        await wait_for(predicate, timeout=0.1, interval=0.02)

    assert time.monotonic() - started < 2.0


@pytest.mark.asyncio
async def test_timeout_error_is_a_builtin_timeout() -> None:
    async def predicate() -> bool:
        return False

    with pytest.raises(TimeoutError):
        await wait_for(predicate, timeout=0.05, interval=0.01)
