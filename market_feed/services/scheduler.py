"""In-process periodic task runner for the authoritative refresh."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from ..models import utc_now
from .metrics import SCHEDULED_TASK_DURATION, SCHEDULED_TASK_RUNS


logger = logging.getLogger(__name__)

TaskBody = Callable[[], Awaitable[Optional[str]]]


class TaskNotFoundError(KeyError):
    """No task is registered under the requested id."""


class TaskStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class TaskTrigger(str, Enum):
    SCHEDULE = "schedule"
    MANUAL = "manual"


@dataclass
class ScheduledTask:
    id: str
    name: str
    interval: timedelta
    fn: TaskBody
    last_run: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        return self.last_run is None or now - self.last_run >= self.interval

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "intervalSeconds": self.interval.total_seconds(),
            "lastRun": self.last_run.isoformat() if self.last_run else None,
        }


@dataclass(frozen=True)
class TaskRun:
    """Outcome of one execution of a scheduled task."""

    task_id: str
    name: str
    trigger: TaskTrigger
    started_at: datetime
    finished_at: datetime
    status: TaskStatus
    detail: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is TaskStatus.SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "taskId": self.task_id,
            "name": self.name,
            "trigger": self.trigger.value,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat(),
            "status": self.status.value,
            "detail": self.detail,
            "error": self.error,
        }


class RefreshScheduler:
    """Run registered tasks on their interval from a single background ticker.

    ``last_run`` is stamped before a body is awaited, so a slow task is not
    started again by the next tick. Task bodies run one after another and a
    failing body is recorded in the history without affecting other tasks.
    Nothing is persisted: a restart runs every task on its first tick.
    """

    def __init__(
        self,
        tick_seconds: float = 60.0,
        *,
        clock: Callable[[], datetime] = utc_now,
        history_size: int = 100,
    ) -> None:
        self._tick_seconds = tick_seconds
        self._clock = clock
        self._tasks: Dict[str, ScheduledTask] = {}
        self._history: Deque[TaskRun] = deque(maxlen=history_size)
        self._ticker: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def register(self, task_id: str, name: str, interval: timedelta, fn: TaskBody) -> ScheduledTask:
        if task_id in self._tasks:
            logger.warning("Replacing scheduled task %s", task_id)
        task = ScheduledTask(id=task_id, name=name, interval=interval, fn=fn)
        self._tasks[task_id] = task
        logger.info("Registered task: %s (runs every %s)", name, interval)
        return task

    def tasks(self) -> List[ScheduledTask]:
        return list(self._tasks.values())

    def history(self) -> List[TaskRun]:
        return list(self._history)

    def start(self) -> None:
        """Start the ticker on the running event loop; a second call is a no-op."""

        if self.is_running:
            return
        self._ticker = asyncio.get_running_loop().create_task(self._run_loop())
        logger.info("Scheduler started (tick every %.1fs)", self._tick_seconds)

    async def stop(self) -> None:
        ticker = self._ticker
        self._ticker = None
        if ticker is None:
            return
        ticker.cancel()
        try:
            await ticker
        except asyncio.CancelledError:
            pass
        logger.info("Scheduler stopped")

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.check_tasks()
            except Exception:
                logger.exception("Scheduler tick failed")
            await asyncio.sleep(self._tick_seconds)

    async def check_tasks(self, now: datetime | None = None) -> List[TaskRun]:
        now = now or self._clock()
        runs: List[TaskRun] = []
        for task in list(self._tasks.values()):
            if not task.is_due(now):
                continue
            logger.info("Running scheduled task: %s", task.name)
            task.last_run = now
            runs.append(await self._execute(task, TaskTrigger.SCHEDULE))
        return runs

    async def run_now(self, task_id: str) -> TaskRun:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task with id {task_id} not found")
        logger.info("Manually running task: %s", task.name)
        task.last_run = self._clock()
        return await self._execute(task, TaskTrigger.MANUAL)

    async def _execute(self, task: ScheduledTask, trigger: TaskTrigger) -> TaskRun:
        started_at = self._clock()
        start = time.perf_counter()
        detail: Optional[str] = None
        error: Optional[str] = None
        try:
            detail = await task.fn()
            status = TaskStatus.SUCCEEDED
            logger.info("Task completed: %s", task.name)
        except Exception as exc:
            status = TaskStatus.FAILED
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("Error running task %s", task.name)
        finally:
            SCHEDULED_TASK_DURATION.labels(task_id=task.id).observe(time.perf_counter() - start)

        SCHEDULED_TASK_RUNS.labels(task_id=task.id, status=status.value).inc()
        run = TaskRun(
            task_id=task.id,
            name=task.name,
            trigger=trigger,
            started_at=started_at,
            finished_at=self._clock(),
            status=status,
            detail=detail,
            error=error,
        )
        self._history.append(run)
        return run
