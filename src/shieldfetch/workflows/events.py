"""Structured fetch events and the observers that receive them.

Components report notable moments (attempts, challenges, hand-offs, item
results) to an injected observer instead of writing to a global log file.
The default observer forwards to :mod:`logging`; tests use
:class:`RecordingObserver` and assert on what was recorded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

logger = logging.getLogger(__name__)

EV_FETCH_ATTEMPT = "fetch_attempt"
EV_FETCH_RESULT = "fetch_result"
EV_CHALLENGE = "challenge"
EV_HANDOFF = "handoff"
EV_CREDENTIALS_INVALIDATED = "credentials_invalidated"
EV_RENDER_FALLBACK = "render_fallback"
EV_RETRY = "retry"
EV_ITEM_STARTED = "item_started"
EV_ITEM_COMPLETED = "item_completed"
EV_ITEM_FAILED = "item_failed"
EV_SUB_RESOURCE_FAILED = "sub_resource_failed"
EV_RUN_FINISHED = "run_finished"

_WARN_EVENTS = {EV_CHALLENGE, EV_ITEM_FAILED, EV_SUB_RESOURCE_FAILED}


@dataclass(frozen=True)
class FetchEvent:
    kind: str
    data: Dict[str, Any] = field(default_factory=dict)


class FetchObserver(Protocol):
    def emit(self, kind: str, **data: Any) -> None: ...


class LoggingObserver:
    """Default observer: one log line per event."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def emit(self, kind: str, **data: Any) -> None:
        level = logging.WARNING if kind in _WARN_EVENTS else logging.DEBUG
        if kind in {EV_HANDOFF, EV_ITEM_COMPLETED, EV_RUN_FINISHED}:
            level = logging.INFO
        details = " ".join(f"{k}={v}" for k, v in data.items())
        self._log.log(level, "%s %s", kind, details)


class RecordingObserver:
    """Keeps every event in memory."""

    def __init__(self) -> None:
        self.events: List[FetchEvent] = []

    def emit(self, kind: str, **data: Any) -> None:
        self.events.append(FetchEvent(kind, dict(data)))

    def kinds(self) -> List[str]:
        return [e.kind for e in self.events]

    def of(self, kind: str) -> List[FetchEvent]:
        return [e for e in self.events if e.kind == kind]


__all__ = [
    "FetchEvent",
    "FetchObserver",
    "LoggingObserver",
    "RecordingObserver",
]
