"""Worker agent: claim tasks from the broker and execute them locally.

Only the worker talks to the broker, always outbound, so it can run on a
machine that accepts no inbound connections. A semaphore bounds the number of
executions in flight; a slot is taken before each poll and handed to the
execution when a task arrives.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, Callable

import httpx
from pydantic import ValidationError

from ..core.config import Settings
from ..core.exceptions import BrokerAuthError, BrokerUnavailableError
from ..core.logging import get_logger, short_id
from ..schemas.tasks import Task, TaskKind
from ..services.notifications import NotificationDispatcher
from .backend import BackendSessionRunner
from .client import BrokerClient
from .executors import ExecutionOutcome, TaskExecutor
from .sessions import SessionReconciler

logger = get_logger(name=__name__)

Sleep = Callable[[float], Awaitable[None]]


class WorkerAgent:
    def __init__(
        self,
        settings: Settings,
        *,
        client: BrokerClient,
        executor: TaskExecutor,
        sessions: SessionReconciler,
        notifications: NotificationDispatcher,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._client = client
        self._executor = executor
        self._sessions = sessions
        self._notifications = notifications
        self._sleep = sleep
        self._slots = asyncio.Semaphore(settings.worker.max_concurrent)
        self._executions: set[asyncio.Task[None]] = set()
        self._consecutive_failures = 0
        self._running = False
        self._poll_task: asyncio.Task[None] | None = None
        self._sweep_task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "WorkerAgent":
        sessions = SessionReconciler(settings.sessions)
        notifications = NotificationDispatcher.from_settings(settings)
        backend = BackendSessionRunner.from_settings(settings, sessions=sessions, notifications=notifications)
        return cls(
            settings,
            client=BrokerClient.from_settings(settings),
            executor=TaskExecutor(settings, backend=backend),
            sessions=sessions,
            notifications=notifications,
        )

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._executions)

    def active_sessions(self) -> list[dict[str, object]]:
        return self._sessions.active_sessions()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await asyncio.to_thread(self._sessions.load)
        worker = self._settings.worker
        logger.info(
            "worker_started",
            broker_url=worker.broker_url,
            long_poll_wait_ms=worker.long_poll_wait_ms,
            max_concurrent=worker.max_concurrent,
            notifications=self._settings.notifications.mode,
        )
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._sweep_task = asyncio.create_task(self._session_sweep_loop())

    async def stop(self) -> None:
        """Stop polling, give running executions a short grace period, then persist and close."""
        self._running = False
        for task in (self._poll_task, self._sweep_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._poll_task = None
        self._sweep_task = None
        if self._executions:
            grace = self._settings.worker.shutdown_grace_seconds
            _, pending = await asyncio.wait(set(self._executions), timeout=grace)
            if pending:
                logger.warning("worker_abandoned_executions", count=len(pending))
        await asyncio.to_thread(self._sessions.persist)
        await self._notifications.aclose()
        await self._client.aclose()
        logger.info("worker_stopped", sessions=[short_id(str(entry["sessionId"])) for entry in self.active_sessions()])

    async def _poll_loop(self) -> None:
        while self._running:
            await self.poll_once()

    async def poll_once(self) -> Task | None:
        await self._slots.acquire()
        handed_off = False
        try:
            task = await self._claim()
            if task is not None:
                self._spawn(task)
                handed_off = True
            return task
        finally:
            if not handed_off:
                self._slots.release()

    async def _claim(self) -> Task | None:
        try:
            task = await self._client.poll()
        except BrokerAuthError as exc:
            logger.error("broker_auth_failed", error=str(exc), retry_in_s=self._settings.worker.auth_retry_seconds)
            await self._sleep(self._settings.worker.auth_retry_seconds)
            return None
        except (BrokerUnavailableError, httpx.HTTPStatusError, ValidationError, ValueError) as exc:
            await self._back_off(exc)
            return None
        self._consecutive_failures = 0
        return task

    async def _back_off(self, exc: Exception) -> None:
        self._consecutive_failures += 1
        worker = self._settings.worker
        delay = min(self._consecutive_failures * worker.backoff_step_seconds, worker.max_backoff_seconds)
        if self._consecutive_failures == 1:
            logger.error("broker_unreachable", error=str(exc))
        logger.info("broker_retry_scheduled", retry_in_s=delay, attempt=self._consecutive_failures)
        await self._sleep(delay)

    def _spawn(self, task: Task) -> None:
        execution = asyncio.create_task(self._execute(task))
        self._executions.add(execution)
        execution.add_done_callback(self._executions.discard)

    async def _execute(self, task: Task) -> None:
        try:
            logger.info(
                "task_started",
                task_id=short_id(task.id),
                kind=task.type.value,
                in_flight=len(self._executions),
                max_concurrent=self._settings.worker.max_concurrent,
            )
            try:
                outcome = await self._executor.execute(task)
            except Exception as exc:
                logger.exception("task_execution_crashed", task_id=short_id(task.id), error=str(exc))
                outcome = ExecutionOutcome.failure(str(exc))
            await self._report(task, outcome)
            if task.type is TaskKind.BACKEND_CLI:
                self._notifications.notify_completion(
                    task.callback_channel,
                    succeeded=outcome.succeeded,
                    duration_ms=outcome.duration_ms,
                    stdout=outcome.stdout,
                    session_id=outcome.metadata.get("sessionId"),
                    platform=task.callback_platform or "discord",
                    container=task.callback_container,
                )
        finally:
            self._slots.release()

    async def _report(self, task: Task, outcome: ExecutionOutcome) -> None:
        try:
            await self._client.report(task.id, outcome)
        except (BrokerUnavailableError, httpx.HTTPError) as exc:
            logger.error("result_report_failed", task_id=short_id(task.id), error=str(exc))
            return
        logger.info(
            "task_completed",
            task_id=short_id(task.id),
            exit_code=outcome.exit_code,
            duration_ms=outcome.duration_ms,
        )

    async def _session_sweep_loop(self) -> None:
        interval = self._settings.sessions.session_sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self._sessions.sweep)
                logger.info("worker_status", in_flight=self.in_flight, active_sessions=len(self.active_sessions()))
            except Exception as exc:  # pragma: no cover - background error logging
                logger.exception("session_sweep_failed", error=str(exc))


__all__ = ["WorkerAgent"]
