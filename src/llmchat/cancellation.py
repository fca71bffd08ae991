"""Shared cooperative cancellation signal."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable
from typing import TypeVar

from .errors import RequestCancelled

T = TypeVar("T")


class CancelToken:
    """A single signal shared between the request path and the interrupt watcher.

    Firing the token makes every pending :meth:`run` and :meth:`sleep` return
    promptly with :class:`RequestCancelled`. The token is re-armed with
    :meth:`reset` at the start of each turn.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "") -> None:
        self._reason = reason or "cancelled"
        self._event.set()

    def reset(self) -> None:
        self._event.clear()
        self._reason = ""

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelled(self._reason)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        When the token wins, the work is cancelled and awaited before
        :class:`RequestCancelled` is raised, so no HTTP call or timer
        outlives the turn that started it.
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RequestCancelled(self._reason)

        work = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not watcher.done():
                watcher.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watcher
            if not work.done():
                work.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await work

        if work.cancelled():
            raise RequestCancelled(self._reason or "cancelled")
        return work.result()

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, raising :class:`RequestCancelled` if fired."""
        await self.run(asyncio.sleep(delay))
