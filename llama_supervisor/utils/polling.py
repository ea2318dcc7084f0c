"""
Bounded polling helper.

Every "wait until llama-server is healthy" loop in the supervisor goes
through wait_until(), so the suspension contract (interval, deadline,
progress hook) lives in one place.

Usage:
    ready = await wait_until(supervisor.is_healthy, interval=0.5, timeout=60)
"""

import time
import asyncio
import inspect
from typing import Awaitable, Callable, Optional, Union


Predicate = Callable[[], Union[bool, Awaitable[bool]]]
ProgressHook = Callable[[float], Union[None, Awaitable[None]]]


async def _call(fn, *args):
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def wait_until(
    predicate: Predicate,
    interval: float,
    timeout: float,
    on_tick: Optional[ProgressHook] = None,
    tick_every: Optional[float] = None
) -> bool:
    """
    Poll a predicate until it returns True or the timeout elapses.

    Args:
        predicate: Sync or async callable returning bool
        interval: Seconds between attempts
        timeout: Overall deadline in seconds
        on_tick: Optional hook called with elapsed seconds
        tick_every: Minimum seconds between on_tick calls (default: every poll)

    Returns:
        True if the predicate succeeded, False on timeout
    """
    start = time.monotonic()
    deadline = start + timeout
    last_tick = start

    while True:
        if await _call(predicate):
            return True

        now = time.monotonic()
        if now >= deadline:
            return False

        if on_tick is not None and (tick_every is None or now - last_tick >= tick_every):
            last_tick = now
            await _call(on_tick, now - start)

        await asyncio.sleep(min(interval, max(0.0, deadline - now)))
