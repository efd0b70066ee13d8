"""Fetch targets, tagged fetch outcomes and the error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

from .challenge_detector import ChallengeVerdict
from .fetch_utils import domain_of


class FetchError(Exception):
    """Base class for every error raised by shieldfetch workflows."""


class TransientError(FetchError):
    """Timeouts, connection resets and non-2xx responses without a challenge."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class RetryExhaustedError(TransientError):
    def __init__(self, label: str, attempts: int, last_error: Optional[BaseException]) -> None:
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"{label} failed after {attempts} attempts{detail}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


class ChallengeError(FetchError):
    """An interstitial challenge was served; a human must clear it. Never retried."""

    def __init__(self, url: str, verdict: Optional[ChallengeVerdict] = None) -> None:
        self.url = url
        self.verdict = verdict
        self.status_code = verdict.status_code if verdict else 0
        self.indicators: Tuple[str, ...] = verdict.indicators if verdict else ()
        super().__init__(f"challenge detected for {url} (status {self.status_code})")


class TerminalError(FetchError):
    """Structural failure (malformed target, empty item); retrying cannot help."""


class DownloadCancelled(FetchError):
    """The run's cancellation token fired."""


@dataclass(frozen=True)
class Target:
    """One fetch request. Immutable for the duration of a call."""

    url: str
    domain: str
    needs_bypass: bool = False
    referer: Optional[str] = None

    @classmethod
    def for_url(cls, url: str, needs_bypass: bool = False, referer: Optional[str] = None) -> "Target":
        return cls(url=url, domain=domain_of(url), needs_bypass=needs_bypass, referer=referer)


@dataclass(frozen=True)
class Success:
    body: Any
    status: int = 200
    url: str = ""
    content_type: str = "text/html"
    method: str = "aiohttp"

    @property
    def text(self) -> str:
        if isinstance(self.body, (bytes, bytearray)):
            return bytes(self.body).decode("utf-8", "replace")
        return self.body if isinstance(self.body, str) else str(self.body)

    def unwrap(self) -> Any:
        return self.body


@dataclass(frozen=True)
class TransientFailure:
    cause: str
    status: Optional[int] = None

    def unwrap(self) -> Any:
        raise TransientError(self.cause, status=self.status)


@dataclass(frozen=True)
class ChallengeDetected:
    verdict: ChallengeVerdict
    resolved_url: str

    def unwrap(self) -> Any:
        raise ChallengeError(self.resolved_url, self.verdict)


FetchOutcome = Union[Success, TransientFailure, ChallengeDetected]

OUTCOME_TYPES = (Success, TransientFailure, ChallengeDetected)


__all__ = [
    "FetchError",
    "TransientError",
    "RetryExhaustedError",
    "ChallengeError",
    "TerminalError",
    "DownloadCancelled",
    "Target",
    "Success",
    "TransientFailure",
    "ChallengeDetected",
    "FetchOutcome",
    "OUTCOME_TYPES",
]
