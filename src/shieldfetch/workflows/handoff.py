"""Human hand-off for challenges and the shared challenge response.

Challenges are never solved automatically. When one is detected the stored
credentials for the domain are retired and the challenge page is opened in
the user's real browser so a human can clear it and capture fresh cookies.
"""

from __future__ import annotations

import logging
import webbrowser
from typing import Callable, Optional

from .challenge_detector import ChallengeVerdict, challenge_url
from .credentials import CredentialStore
from .events import (
    EV_CHALLENGE,
    EV_CREDENTIALS_INVALIDATED,
    EV_HANDOFF,
    FetchObserver,
    LoggingObserver,
)
from .outcomes import ChallengeDetected, Target

logger = logging.getLogger(__name__)

HandOff = Callable[[str], None]


def open_in_browser(url: str) -> None:
    """Open ``url`` in the default browser without waiting for it."""

    if not webbrowser.open(url, new=2, autoraise=True):
        raise RuntimeError(f"no browser available to open {url}")


def no_handoff(url: str) -> None:
    logger.info("Challenge hand-off disabled; clear it manually: %s", url)


class ChallengeResponder:
    """Retires credentials and hands the challenge to a human, once per detection."""

    def __init__(
        self,
        store: Optional[CredentialStore],
        handoff: HandOff = open_in_browser,
        observer: Optional[FetchObserver] = None,
    ) -> None:
        self.store = store
        self.handoff = handoff
        self.observer = observer or LoggingObserver(logger)

    def respond(self, target: Target, verdict: ChallengeVerdict, resolved_url: Optional[str] = None) -> ChallengeDetected:
        url = resolved_url or target.url
        self.observer.emit(
            EV_CHALLENGE,
            url=url,
            domain=target.domain,
            status=verdict.status_code,
            indicators=list(verdict.indicators),
        )
        if self.store is not None and target.domain:
            self.store.invalidate(target.domain)
            removed = self.store.delete(target.domain)
            self.observer.emit(EV_CREDENTIALS_INVALIDATED, domain=target.domain, removed=removed)
        page = challenge_url(verdict, url)
        try:
            self.handoff(page)
            self.observer.emit(EV_HANDOFF, url=page, domain=target.domain)
        except Exception as exc:  # noqa: BLE001 - hand-off is best effort
            logger.warning("Could not hand challenge off to a browser (%s): %s", page, exc)
        return ChallengeDetected(verdict=verdict, resolved_url=url)


__all__ = ["HandOff", "open_in_browser", "no_handoff", "ChallengeResponder"]
