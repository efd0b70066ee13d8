"""Download orchestration: list -> diff -> per item (sub-resources -> archive).

The manager runs one catalog at a time, strictly sequentially. Items are
processed in ascending key order and every item gets its own temporary work
area that is removed however the item ends. Transient failures are retried
and then skipped at the smallest possible scope (a sub-resource, then an
item); a challenge or a cancellation stops the run but never touches archives
that were already written.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .cancel import CancelToken
from .destination import Destination, RawFileSink, SubResourceSink
from .events import (
    EV_ITEM_COMPLETED,
    EV_ITEM_FAILED,
    EV_ITEM_STARTED,
    EV_RUN_FINISHED,
    EV_SUB_RESOURCE_FAILED,
    FetchObserver,
    LoggingObserver,
)
from .extraction import Extractor, SiteDescriptor
from .fetch_config import EngineConfig
from .fetch_utils import extract_ordinal, sorted_keys
from .outcomes import (
    ChallengeError,
    DownloadCancelled,
    FetchError,
    TerminalError,
    TransientError,
)
from .rate_limit import IntervalLimiter
from .retry import RetryPolicy, with_retry
from .transport import TransportFetcher

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float, int, int, int], None]

_RE_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class RunState(str, Enum):
    IDLE = "idle"
    LIST_FETCH = "list_fetch"
    DIFF = "diff"
    ITEM_FETCH = "item_fetch"
    SUB_RESOURCE_FETCH = "sub_resource_fetch"
    ARCHIVE = "archive"
    COMPLETE = "complete"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ProgressEvent:
    message: str
    fraction: float
    ordinal: int
    index: int
    total: int


@dataclass
class RunReport:
    catalog: str
    total_found: int = 0
    new_items: int = 0
    completed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    partial: Dict[str, int] = field(default_factory=dict)
    archives: List[Path] = field(default_factory=list)
    state: RunState = RunState.IDLE
    abort_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "catalog": self.catalog,
            "total_found": self.total_found,
            "new_items": self.new_items,
            "completed": list(self.completed),
            "failed": dict(self.failed),
            "partial": dict(self.partial),
            "archives": [str(p) for p in self.archives],
            "state": self.state.value,
            "abort_reason": self.abort_reason,
        }


def default_policy(config: EngineConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.retry_attempts,
        base=config.backoff_base,
        timeout=config.operation_timeout,
        timeout_step=config.operation_timeout_step,
    )


def _safe_segment(value: str) -> str:
    return _RE_UNSAFE.sub("_", value).strip("._") or "item"


class DownloadManager:
    """Sequences one catalog run and reports progress through a callback.

    ``progress`` receives ``(message, fraction, ordinal, index, total)`` where
    ``fraction`` never decreases within a run, ``index`` is the 1-based
    position among new items and ``total`` is the number of items found.
    """

    def __init__(
        self,
        site: SiteDescriptor,
        extractor: Extractor,
        transport: TransportFetcher,
        destination: Destination,
        *,
        config: Optional[EngineConfig] = None,
        sink: Optional[SubResourceSink] = None,
        progress: Optional[ProgressCallback] = None,
        limiter: Optional[IntervalLimiter] = None,
        policy: Optional[RetryPolicy] = None,
        cancel: Optional[CancelToken] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        observer: Optional[FetchObserver] = None,
    ) -> None:
        self.site = site
        self.extractor = extractor
        self.transport = transport
        self.destination = destination
        self.config = config or EngineConfig()
        self.sink = sink or RawFileSink()
        self.progress = progress
        self.limiter = limiter or IntervalLimiter(self.config.rate_interval)
        self.policy = policy or default_policy(self.config)
        self.cancel = cancel or CancelToken()
        self.observer = observer or LoggingObserver(logger)
        self._sleep = sleep
        self._state = RunState.IDLE
        self._fraction = 0.0
        self.history: List[ProgressEvent] = []
        self.report: Optional[RunReport] = None

    @property
    def state(self) -> RunState:
        return self._state

    def _emit(self, message: str, fraction: float, ordinal: int = 0, index: int = 0, total: int = 0) -> None:
        self._fraction = max(self._fraction, min(1.0, max(0.0, fraction)))
        event = ProgressEvent(message, self._fraction, ordinal, index, total)
        self.history.append(event)
        logger.debug("progress %.3f %s", event.fraction, message)
        if self.progress is not None:
            self.progress(event.message, event.fraction, event.ordinal, event.index, event.total)

    async def _retry(self, op: Callable[[], Awaitable[Any]], label: str) -> Any:
        return await with_retry(
            op,
            self.policy,
            cancel=self.cancel,
            sleep=self._sleep,
            label=label,
            observer=self.observer,
        )

    async def run(self, list_url: str, catalog: Optional[str] = None) -> RunReport:
        """Download every item of ``list_url`` not yet present in the destination.

        Raises :class:`ChallengeError` when a challenge stops the run and
        :class:`DownloadCancelled` when the token fires; ``self.report`` still
        describes everything that finished before that.
        """

        report = RunReport(catalog=catalog or self.site.name)
        self.report = report
        self._fraction = 0.0
        self.history = []
        try:
            self.cancel.check()
            self._state = RunState.LIST_FETCH
            self._emit("Fetching item list...", 0.0)
            items: Dict[str, str] = await self._retry(
                lambda: self.extractor.fetch_item_set(list_url), f"item list {list_url}"
            )
            report.total_found = len(items)

            self._state = RunState.DIFF
            acquired = self.destination.acquired_keys()
            pending = {k: v for k, v in items.items() if k not in acquired}
            report.new_items = len(pending)
            total = report.total_found
            if not pending:
                self._finish(report, RunState.COMPLETE)
                self._emit("No new items to download", 1.0, 0, 0, total)
                return report
            self._emit(f"Found {len(pending)} new items to download", 0.0, 0, 0, total)

            ordered = sorted_keys(pending)
            for idx, key in enumerate(ordered):
                self.cancel.check()
                ordinal = extract_ordinal(key)
                self._emit(
                    f"Downloading item {ordinal} ({idx + 1} of {len(ordered)})",
                    idx / len(ordered),
                    ordinal,
                    idx + 1,
                    total,
                )
                self.observer.emit(EV_ITEM_STARTED, key=key, url=pending[key])
                try:
                    await self._download_item(report, key, pending[key], idx, len(ordered), ordinal, total)
                except (ChallengeError, DownloadCancelled):
                    raise
                except Exception as exc:
                    if not isinstance(exc, (FetchError, OSError)):
                        logger.warning("Item %s failed unexpectedly", key, exc_info=True)
                    report.failed[key] = str(exc) or type(exc).__name__
                    self.observer.emit(EV_ITEM_FAILED, key=key, error=str(exc))
                    continue

            self._finish(report, RunState.COMPLETE)
            self._emit(
                f"Download complete: {len(report.completed)} of {len(ordered)} items",
                1.0,
                0,
                len(ordered),
                total,
            )
            return report
        except ChallengeError as exc:
            report.abort_reason = str(exc)
            self._finish(report, RunState.ABORTED)
            raise
        except DownloadCancelled as exc:
            report.abort_reason = str(exc) or "cancelled"
            self._finish(report, RunState.ABORTED)
            raise
        except Exception as exc:
            # Only reachable outside the item loop (list fetch, diff).
            report.abort_reason = str(exc) or type(exc).__name__
            self._finish(report, RunState.ABORTED)
            raise

    def _finish(self, report: RunReport, state: RunState) -> None:
        self._state = state
        report.state = state
        self.observer.emit(
            EV_RUN_FINISHED,
            catalog=report.catalog,
            state=state.value,
            completed=len(report.completed),
            failed=len(report.failed),
        )

    async def _download_item(
        self,
        report: RunReport,
        key: str,
        item_url: str,
        idx: int,
        n_items: int,
        ordinal: int,
        total: int,
    ) -> None:
        self._state = RunState.ITEM_FETCH
        locators: List[str] = await self._retry(
            lambda: self.extractor.fetch_sub_resources(item_url), f"item {key}"
        )
        if not locators:
            raise TerminalError(f"no sub-resources found for {key}")

        # a fresh directory per attempt; leftovers of a killed run are never archived
        site_dir = Path(self.config.work_dir) / _safe_segment(self.site.name)
        site_dir.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix=f"{_safe_segment(key)}-", dir=site_dir))
        try:
            self._state = RunState.SUB_RESOURCE_FETCH
            successes = 0
            failures = 0
            count = len(locators)
            for pos, locator in enumerate(locators, start=1):
                self.cancel.check()
                data = await self._fetch_sub_resource(key, item_url, locator, pos, count)
                if data is None:
                    failures += 1
                else:
                    self.sink.store(data, work_dir, f"{pos:03d}", locator)
                    successes += 1
                self._emit(
                    f"Item {ordinal}: sub-resource {pos}/{count}",
                    (idx + pos / count) / n_items,
                    ordinal,
                    idx + 1,
                    total,
                )
            if successes == 0:
                raise TerminalError(f"no sub-resources downloaded for {key}")

            self._state = RunState.ARCHIVE
            self._emit(f"Item {ordinal}: writing archive", (idx + 1) / n_items, ordinal, idx + 1, total)
            archive = self.destination.write_archive(key, work_dir)
            report.archives.append(archive)
            report.completed.append(key)
            if failures:
                report.partial[key] = failures
                logger.warning("Item %s archived with %d of %d sub-resources", key, successes, count)
            self.observer.emit(EV_ITEM_COMPLETED, key=key, archived=successes, missing=failures)
            self._emit(f"Item {ordinal}: complete", (idx + 1) / n_items, ordinal, idx + 1, total)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    async def _fetch_sub_resource(self, key: str, item_url: str, locator: str, pos: int, count: int) -> Optional[bytes]:
        target = self.site.target(locator, referer=item_url)

        async def _attempt():
            await self.limiter.wait(self.cancel)
            return await self.transport.fetch_bytes(target)

        try:
            return await self._retry(_attempt, f"{key} sub-resource {pos}/{count}")
        except (TransientError, TerminalError) as exc:
            self.observer.emit(EV_SUB_RESOURCE_FAILED, key=key, url=locator, error=str(exc))
            return None


__all__ = [
    "DownloadManager",
    "RunState",
    "RunReport",
    "ProgressEvent",
    "ProgressCallback",
    "default_policy",
]
