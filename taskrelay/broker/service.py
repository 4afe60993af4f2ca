"""In-memory task broker.

The broker owns two stores: tasks waiting for (or being executed by) a worker,
and results waiting to be taken by the caller. Every mutation runs under a
single ``asyncio.Lock`` without awaiting in between, so a claim is one
indivisible scan-and-flip relative to other claims, submissions and reports.
Long-poll waits happen outside the lock as bounded sleep-and-recheck loops.
"""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from ..core import metrics
from ..core.config import BrokerSettings, Settings
from ..core.exceptions import TaskNotFoundError, TaskValidationError, UnknownTaskError
from ..core.logging import get_logger
from ..schemas.tasks import ResultReport, Task, TaskKind, TaskResult, TaskStatusView
from .store import ResultStore, TaskStore

logger = get_logger(name=__name__)

TimestampFactory = Callable[[], datetime]

_REQUIRED_FIELDS: dict[TaskKind, tuple[str, ...]] = {
    TaskKind.COMMAND: ("command",),
    TaskKind.FILE_READ: ("path",),
    TaskKind.FILE_WRITE: ("path", "content"),
    TaskKind.BACKEND_CLI: ("prompt",),
}

_PAYLOAD_FIELDS: dict[TaskKind, tuple[str, ...]] = {
    TaskKind.COMMAND: ("command", "timeout"),
    TaskKind.FILE_READ: ("path",),
    TaskKind.FILE_WRITE: ("path", "content", "encoding"),
    TaskKind.BACKEND_CLI: (
        "prompt",
        "timeout",
        "session_id",
        "callback_channel",
        "callback_platform",
        "callback_container",
    ),
}

# Empty file content is a legitimate write.
_EMPTY_ALLOWED = frozenset({"content"})


@dataclass(slots=True)
class SweepStats:
    tasks_expired: int = 0
    results_expired: int = 0


class TaskBroker:
    def __init__(
        self,
        settings: BrokerSettings,
        *,
        tasks: TaskStore | None = None,
        results: ResultStore | None = None,
        now: TimestampFactory | None = None,
    ) -> None:
        self._settings = settings
        self._tasks = tasks or TaskStore()
        self._results = results or ResultStore()
        self._now: TimestampFactory = now or (lambda: datetime.now(timezone.utc))
        self._lock = asyncio.Lock()
        self._interval = settings.poll_interval_ms / 1000
        self._sweep_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "TaskBroker":
        return cls(settings.broker)

    @property
    def settings(self) -> BrokerSettings:
        return self._settings

    def stats(self) -> dict[str, int]:
        return {"tasks": len(self._tasks), "results": len(self._results)}

    async def submit(self, kind: TaskKind, payload: Mapping[str, Any]) -> Task:
        required = _REQUIRED_FIELDS[kind]
        missing = [name for name in required if _is_missing(name, payload.get(name))]
        if missing:
            fields = " and ".join(required)
            verb = "is" if len(required) == 1 else "are"
            raise TaskValidationError(f"{fields} {verb} required")

        # Blank optional values count as absent.
        fields = {name: payload.get(name) for name in _PAYLOAD_FIELDS[kind] if not _is_missing(name, payload.get(name))}
        if kind is TaskKind.COMMAND:
            fields.setdefault("timeout", self._settings.default_command_timeout_ms)
        elif kind is TaskKind.FILE_WRITE:
            fields.setdefault("encoding", "utf8")
        elif kind is TaskKind.BACKEND_CLI:
            fields.setdefault("timeout", self._settings.default_backend_timeout_ms)
            fields.setdefault("session_id", str(uuid.uuid4()))
            fields.setdefault("callback_platform", self._settings.default_callback_platform)

        task = Task(id=str(uuid.uuid4()), type=kind, created_at=self._now(), **fields)
        async with self._lock:
            self._tasks.add(task)
            self._record_sizes()
        metrics.increment_task_submitted(kind=kind.value)
        logger.info(
            "task_submitted",
            task_id=task.id,
            kind=kind.value,
            summary=_summarize(task),
            session_id=task.session_id,
            callback_channel=task.callback_channel,
        )
        return task

    async def claim(self, wait_ms: int | None = None) -> Task | None:
        """Hand the oldest pending task to the caller, holding the request up to ``wait_ms``."""
        if wait_ms is None:
            wait_ms = self._settings.default_claim_wait_ms
        wait_seconds = _clamp(wait_ms, self._settings.max_claim_wait_ms) / 1000
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds
        while True:
            async with self._lock:
                task = self._tasks.claim_oldest_pending()
            if task is not None:
                waited = (self._now() - task.created_at).total_seconds()
                metrics.record_task_claimed(kind=task.type.value, waited=waited)
                logger.info("task_claimed", task_id=task.id, kind=task.type.value, waited_s=round(waited, 3))
                return task.model_copy()
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self._interval, remaining))

    async def report(self, report: ResultReport) -> TaskResult:
        task_id = report.task_id
        if not task_id:
            raise TaskValidationError("taskId is required")
        result = TaskResult(
            task_id=task_id,
            stdout=report.stdout or "",
            stderr=report.stderr or "",
            exit_code=report.exit_code if report.exit_code is not None else -1,
            error=report.error or None,
            completed_at=self._now(),
            metadata=report.metadata or None,
        )
        async with self._lock:
            if task_id not in self._tasks and task_id not in self._results:
                raise UnknownTaskError(f"Task {task_id} not found")
            self._results.put(result)
            self._tasks.remove(task_id)
            self._record_sizes()
        metrics.increment_result_reported(exit_code=result.exit_code)
        logger.info("result_reported", task_id=task_id, exit_code=result.exit_code)
        screenshot = (result.metadata or {}).get("screenshotPath")
        if screenshot:
            logger.info("result_screenshot", task_id=task_id, screenshot_path=screenshot)
        return result

    async def fetch(self, task_id: str, wait_ms: int = 0) -> TaskResult | TaskStatusView:
        """Take the result for ``task_id`` or report the task status after waiting."""
        wait_seconds = _clamp(wait_ms, self._settings.max_fetch_wait_ms) / 1000
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds
        while True:
            async with self._lock:
                result = self._results.take(task_id)
                task = self._tasks.get(task_id) if result is None else None
                if result is not None:
                    self._tasks.remove(task_id)
                    self._record_sizes()
            if result is not None:
                metrics.increment_result_fetched()
                logger.info("result_fetched", task_id=task_id, exit_code=result.exit_code)
                return result
            if task is None:
                # Neither store holds the id, so no result can ever arrive.
                raise TaskNotFoundError(f"Task {task_id} not found")
            remaining = deadline - loop.time()
            if remaining <= 0:
                return TaskStatusView(status=task.status)
            await asyncio.sleep(min(self._interval, remaining))

    async def sweep(self, now: datetime | None = None) -> SweepStats:
        """Drop stale tasks and unfetched results; memory stays bounded without persistence."""
        moment = now or self._now()
        task_cutoff = moment - timedelta(seconds=self._settings.task_ttl_seconds)
        result_cutoff = moment - timedelta(seconds=self._settings.result_ttl_seconds)
        stats = SweepStats()
        async with self._lock:
            for task_id in self._tasks.created_before(task_cutoff):
                if task_id in self._results:
                    continue
                self._tasks.remove(task_id)
                stats.tasks_expired += 1
                logger.info("task_expired", task_id=task_id)
            for task_id in self._results.completed_before(result_cutoff):
                self._results.remove(task_id)
                self._tasks.remove(task_id)
                stats.results_expired += 1
                logger.info("result_expired", task_id=task_id)
            self._record_sizes()
        metrics.increment_expired(record="task", count=stats.tasks_expired)
        metrics.increment_expired(record="result", count=stats.results_expired)
        return stats

    async def _sweep_loop(self) -> None:
        interval = max(1, self._settings.sweep_interval_seconds)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as exc:  # pragma: no cover - background error logging
                logger.exception("broker_sweep_failed", error=str(exc))

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["TaskBroker"]:
        await self.start()
        try:
            yield self
        finally:
            await self.stop()

    async def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

    def _record_sizes(self) -> None:
        metrics.record_store_sizes(tasks=len(self._tasks), results=len(self._results))


def _is_missing(name: str, value: Any) -> bool:
    if value is None:
        return True
    return name not in _EMPTY_ALLOWED and value == ""


def _clamp(wait_ms: int | None, cap_ms: int) -> int:
    if not wait_ms or wait_ms < 0:
        return 0
    return min(wait_ms, cap_ms)


def _summarize(task: Task) -> str:
    text = task.command or task.prompt or task.path or ""
    return text[:50]


__all__ = ["SweepStats", "TaskBroker"]
