"""Outbound rate limiting — a ticking gate admitting N requests per second."""

from __future__ import annotations

import asyncio
import time

from .cancellation import CancelToken


class RateLimiter:
    """Admits at most one caller every ``1 / requests_per_second`` seconds.

    The gate holds a single admission at start, so the first call goes
    through immediately; each later slot is one interval after the previous
    one. Slots are reserved in arrival order under a lock, and the wait for
    the reserved slot happens outside it, so a cancelled waiter never blocks
    the callers behind it. A reserved slot is not refunded on cancellation.
    """

    def __init__(self, requests_per_second: float) -> None:
        if requests_per_second <= 0:
            msg = "requests_per_second must be positive"
            raise ValueError(msg)
        self._interval = 1.0 / requests_per_second
        self._next_slot: float | None = None
        self._lock = asyncio.Lock()

    @property
    def interval(self) -> float:
        return self._interval

    async def _reserve(self) -> float:
        async with self._lock:
            now = time.monotonic()
            slot = now if self._next_slot is None else max(now, self._next_slot)
            self._next_slot = slot + self._interval
            return slot - now

    async def acquire(self, cancel: CancelToken | None = None) -> None:
        """Block until admitted, or raise ``RequestCancelled`` if ``cancel`` fires."""
        if cancel is not None:
            cancel.raise_if_cancelled()
        delay = await self._reserve()
        if delay <= 0:
            return
        if cancel is None:
            await asyncio.sleep(delay)
        else:
            await cancel.sleep(delay)
