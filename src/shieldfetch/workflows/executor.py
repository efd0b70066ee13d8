"""Transport-first request execution with a single render fallback."""

from __future__ import annotations

import logging
from typing import Optional

from .events import EV_RENDER_FALLBACK, FetchObserver, LoggingObserver
from .outcomes import FetchOutcome, Target, TransientFailure
from .render import RenderFetcher
from .transport import TransportFetcher

logger = logging.getLogger(__name__)


class RequestExecutor:
    """Try plain HTTP first; on a transient failure render the page once.

    A challenge from the transport path is returned as-is: the browser would
    be served the same interstitial, and the credentials were already retired.
    """

    def __init__(
        self,
        transport: TransportFetcher,
        render: Optional[RenderFetcher] = None,
        observer: Optional[FetchObserver] = None,
    ) -> None:
        self.transport = transport
        self.render = render
        self.observer = observer or LoggingObserver(logger)

    async def fetch(self, target: Target, wait_selector: Optional[str] = None) -> FetchOutcome:
        outcome = await self.transport.fetch(target)
        if not isinstance(outcome, TransientFailure):
            return outcome
        if self.render is None:
            return outcome
        self.observer.emit(EV_RENDER_FALLBACK, url=target.url, cause=outcome.cause)
        return await self.render.fetch(target, wait_selector=wait_selector)


__all__ = ["RequestExecutor"]
