"""Polling helper used to wait for a condition with a deadline."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from .errors import WaitTimeoutError


async def wait_for(
    predicate: Callable[[], Awaitable[bool]],
    timeout: float,
    interval: float,
) -> None:
    """Poll ``predicate`` until it returns True or ``timeout`` seconds pass.

    Each evaluation is raced against the remaining time, so a slow predicate
    cannot push the wait past its deadline.

    Raises
    ------
    WaitTimeoutError
        If the predicate did not hold before the deadline.
    """

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        try:
            done = await asyncio.wait_for(predicate(), timeout=remaining)
        except TimeoutError:
            break
        if done:
            return
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.sleep(min(interval, remaining))

    raise WaitTimeoutError(f"Timeout reached after {timeout:g}s")
