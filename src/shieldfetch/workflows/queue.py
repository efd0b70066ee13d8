"""FIFO queue of catalog downloads, run one at a time.

Each task is handed to a runner (normally a :class:`DownloadManager` built
for the task's site) together with its own cancel token and a progress
callback. The queue only tracks status; it never retries on its own. A task
stopped by a challenge is parked as ``waiting_challenge`` until someone
clears the challenge and calls :meth:`DownloadQueue.retry`.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .cancel import CancelToken
from .outcomes import ChallengeError, DownloadCancelled, FetchError

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    WAITING_CHALLENGE = "waiting_challenge"


_RETRYABLE = {TaskStatus.FAILED, TaskStatus.CANCELLED, TaskStatus.WAITING_CHALLENGE}


@dataclass
class DownloadTask:
    task_id: str
    list_url: str
    catalog: str
    status: TaskStatus = TaskStatus.QUEUED
    message: str = ""
    fraction: float = 0.0
    error: Optional[str] = None
    challenge_url: Optional[str] = None
    result: Any = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "list_url": self.list_url,
            "catalog": self.catalog,
            "status": self.status.value,
            "message": self.message,
            "fraction": self.fraction,
            "error": self.error,
            "challenge_url": self.challenge_url,
            "attempts": self.attempts,
        }


TaskProgress = Callable[[str, float, int, int, int], None]
Runner = Callable[[DownloadTask, CancelToken, TaskProgress], Awaitable[Any]]
UpdateCallback = Callable[[DownloadTask], None]


@dataclass
class _Slot:
    task: DownloadTask
    token: Optional[CancelToken] = field(default=None)


class DownloadQueue:
    def __init__(self, runner: Runner, *, on_update: Optional[UpdateCallback] = None) -> None:
        self._runner = runner
        self._on_update = on_update
        self._slots: Dict[str, _Slot] = {}
        self._order: List[str] = []
        self._ids = itertools.count(1)

    @property
    def tasks(self) -> List[DownloadTask]:
        return [self._slots[tid].task for tid in self._order]

    def get(self, task_id: str) -> Optional[DownloadTask]:
        slot = self._slots.get(task_id)
        return slot.task if slot else None

    def _notify(self, task: DownloadTask) -> None:
        if self._on_update is not None:
            self._on_update(task)

    def _set(self, task: DownloadTask, status: TaskStatus, message: str = "") -> None:
        task.status = status
        if message:
            task.message = message
        logger.debug("task %s -> %s %s", task.task_id, status.value, message)
        self._notify(task)

    def add(self, list_url: str, catalog: Optional[str] = None) -> DownloadTask:
        task = DownloadTask(task_id=f"task-{next(self._ids)}", list_url=list_url, catalog=catalog or list_url)
        self._slots[task.task_id] = _Slot(task)
        self._order.append(task.task_id)
        self._set(task, TaskStatus.QUEUED, "Queued")
        return task

    def cancel(self, task_id: str) -> bool:
        """Cancel a queued task outright, or signal a running one to stop."""

        slot = self._slots.get(task_id)
        if slot is None:
            return False
        task = slot.task
        if task.status is TaskStatus.QUEUED:
            self._set(task, TaskStatus.CANCELLED, "Cancelled")
            return True
        if task.status is TaskStatus.DOWNLOADING and slot.token is not None:
            slot.token.cancel("cancelled by user")
            return True
        return False

    def retry(self, task_id: str) -> bool:
        slot = self._slots.get(task_id)
        if slot is None or slot.task.status not in _RETRYABLE:
            return False
        task = slot.task
        task.error = None
        task.challenge_url = None
        task.fraction = 0.0
        # Retried tasks go to the back of the line.
        self._order.remove(task_id)
        self._order.append(task_id)
        self._set(task, TaskStatus.QUEUED, "Queued for retry")
        return True

    def next_queued(self) -> Optional[DownloadTask]:
        for tid in self._order:
            task = self._slots[tid].task
            if task.status is TaskStatus.QUEUED:
                return task
        return None

    async def run_task(self, task: DownloadTask) -> DownloadTask:
        slot = self._slots[task.task_id]
        token = CancelToken()
        slot.token = token
        task.attempts += 1
        self._set(task, TaskStatus.DOWNLOADING, "Starting")

        def _progress(message: str, fraction: float, ordinal: int, index: int, total: int) -> None:
            task.message = message
            task.fraction = fraction
            self._notify(task)

        try:
            task.result = await self._runner(task, token, _progress)
        except ChallengeError as exc:
            task.error = str(exc)
            task.challenge_url = exc.url
            self._set(task, TaskStatus.WAITING_CHALLENGE, "Waiting for challenge to be cleared")
        except DownloadCancelled as exc:
            task.error = str(exc)
            self._set(task, TaskStatus.CANCELLED, "Cancelled")
        except FetchError as exc:
            task.error = str(exc)
            logger.error("Download task %s failed: %s", task.task_id, exc)
            self._set(task, TaskStatus.FAILED, "Failed")
        else:
            task.fraction = 1.0
            self._set(task, TaskStatus.COMPLETED, "Completed")
        finally:
            slot.token = None
        return task

    async def run_pending(self) -> List[DownloadTask]:
        """Run queued tasks in FIFO order until none are left."""

        finished: List[DownloadTask] = []
        while True:
            task = self.next_queued()
            if task is None:
                return finished
            finished.append(await self.run_task(task))


__all__ = [
    "DownloadQueue",
    "DownloadTask",
    "TaskStatus",
]
