from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Callable, Iterable

from taskrelay.core.exceptions import DeliveryError
from taskrelay.schemas.tasks import Task
from taskrelay.worker.backend import BackendTurn, EventCallback
from taskrelay.worker.executors import ExecutionOutcome


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


class StubBrokerClient:
    """In-memory stand-in for BrokerClient; ``poll`` pops scripted items."""

    def __init__(self, items: Iterable[Task | Exception | None] = ()) -> None:
        self.items: deque[Task | Exception | None] = deque(items)
        self.reports: list[tuple[str, ExecutionOutcome]] = []
        self.report_error: Exception | None = None
        self.closed = False

    async def poll(self, wait_ms: int | None = None) -> Task | None:  # noqa: ARG002
        if not self.items:
            await asyncio.sleep(0.01)
            return None
        item = self.items.popleft()
        if isinstance(item, Exception):
            raise item
        return item

    async def report(self, task_id: str, outcome: ExecutionOutcome) -> None:
        if self.report_error is not None:
            raise self.report_error
        self.reports.append((task_id, outcome))

    async def aclose(self) -> None:
        self.closed = True


class GatedExecutor:
    """Executor that holds every task until ``release`` is set, tracking peak concurrency."""

    def __init__(self, outcome: ExecutionOutcome | None = None) -> None:
        self.release = asyncio.Event()
        self.active = 0
        self.peak = 0
        self.started: list[str] = []
        self._outcome = outcome

    async def execute(self, task: Task) -> ExecutionOutcome:
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.started.append(task.id)
        try:
            await self.release.wait()
        finally:
            self.active -= 1
        if self._outcome is not None:
            return self._outcome
        return ExecutionOutcome(stdout=f"ran {task.command}", duration_ms=5)


class FlakySender:
    """Notification sender failing the first ``failures`` attempts."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.attempts = 0
        self.delivered: list[tuple[str, str, str]] = []
        self.containers: list[str | None] = []

    async def send(self, platform: str, channel: str, text: str, *, container: str | None = None) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise DeliveryError(f"attempt {self.attempts} failed")
        self.delivered.append((platform, channel, text))
        self.containers.append(container)

    async def aclose(self) -> None:
        return None


class ScriptedBackend:
    """Backend returning (or raising) scripted turns in order."""

    def __init__(self, turns: Iterable[BackendTurn | Exception]) -> None:
        self.turns = list(turns)
        self.calls: list[dict[str, Any]] = []

    async def run_turn(
        self,
        prompt: str,
        *,
        resume_id: str | None,
        timeout_seconds: float,
        on_event: EventCallback | None = None,
    ) -> BackendTurn:
        self.calls.append({"prompt": prompt, "resume_id": resume_id, "timeout_seconds": timeout_seconds})
        item = self.turns.pop(0)
        if isinstance(item, Exception):
            raise item
        if on_event is not None and item.session_id:
            on_event({"type": "system", "subtype": "init", "session_id": item.session_id})
            on_event({"type": "assistant", "message": {"content": [{"type": "text", "text": "progress"}]}})
        return item


def succeeded_turn(session_id: str, text: str = "done") -> BackendTurn:
    return BackendTurn(session_id=session_id, result_text=text, subtype="success", return_code=0)
