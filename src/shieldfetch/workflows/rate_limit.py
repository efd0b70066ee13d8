"""Minimum-interval limiter for sequential sub-resource requests."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

from .cancel import CancelToken


class IntervalLimiter:
    """Grants permits no closer together than ``interval`` seconds.

    Spacing is measured between permit grants on a monotonic clock, so slow
    responses do not add to the delay and fast ones cannot burst. The first
    permit is granted immediately.
    """

    def __init__(
        self,
        interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if interval < 0:
            raise ValueError("interval must be >= 0")
        self.interval = float(interval)
        self._clock = clock
        self._sleep = sleep
        self._last: Optional[float] = None
        self._lock = asyncio.Lock()

    async def wait(self, token: Optional[CancelToken] = None) -> None:
        async with self._lock:
            if self._last is not None:
                delay = self._last + self.interval - self._clock()
                if delay > 0:
                    if token is not None:
                        await token.guard(self._sleep(delay))
                    else:
                        await self._sleep(delay)
            if token is not None:
                token.check()
            self._last = self._clock()

    def reset(self) -> None:
        self._last = None


__all__ = ["IntervalLimiter"]
