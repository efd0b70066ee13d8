"""Cooperative cancellation threaded through every orchestration call."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, TypeVar

from .outcomes import DownloadCancelled

T = TypeVar("T")


class CancelToken:
    """A one-shot cancellation signal.

    Orchestration code calls :meth:`check` at safe points and wraps
    in-flight awaits in :meth:`guard`, so cancelling takes effect at the next
    check or immediately interrupts the current network/sleep call.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def cancel_threadsafe(self, reason: str = "cancelled") -> None:
        """Cancel from a thread other than the one running the event loop."""

        if self._loop is None:
            self.cancel(reason)
            return
        self._loop.call_soon_threadsafe(self.cancel, reason)

    def check(self) -> None:
        if self._event.is_set():
            raise DownloadCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless the token fires first, in which case it is cancelled."""

        self.check()
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):  # noqa: BLE001 - outcome discarded after cancel
            pass
        raise DownloadCancelled(self.reason or "cancelled")

    async def sleep(self, delay: float) -> None:
        """Sleep that ends early (raising) when the token fires."""

        if delay <= 0:
            self.check()
            return
        await self.guard(asyncio.sleep(delay))


async def maybe_guard(token: Optional[CancelToken], aw: Awaitable[Any]) -> Any:
    if token is None:
        return await aw
    return await token.guard(aw)


__all__ = ["CancelToken", "maybe_guard"]
