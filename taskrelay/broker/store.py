from __future__ import annotations

from datetime import datetime
from itertools import count

from ..schemas.tasks import Task, TaskResult, TaskStatus


class TaskStore:
    """Pending and running task records keyed by task id.

    Not synchronised on its own; the broker serialises access.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._sequence = count(1)

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def add(self, task: Task) -> Task:
        if task.id in self._tasks:
            raise ValueError(f"Task {task.id} already exists")
        task.sequence = next(self._sequence)
        self._tasks[task.id] = task
        return task

    def get(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def remove(self, task_id: str) -> Task | None:
        return self._tasks.pop(task_id, None)

    def claim_oldest_pending(self) -> Task | None:
        """Flip the oldest pending task to running and return it."""
        pending = [task for task in self._tasks.values() if task.status is TaskStatus.PENDING]
        if not pending:
            return None
        task = min(pending, key=lambda item: item.sequence)
        task.status = TaskStatus.RUNNING
        return task

    def created_before(self, cutoff: datetime) -> list[str]:
        return [task_id for task_id, task in self._tasks.items() if task.created_at < cutoff]


class ResultStore:
    """Completed task outcomes waiting to be taken by the caller."""

    def __init__(self) -> None:
        self._results: dict[str, TaskResult] = {}

    def __len__(self) -> int:
        return len(self._results)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._results

    def put(self, result: TaskResult) -> None:
        self._results[result.task_id] = result

    def take(self, task_id: str) -> TaskResult | None:
        return self._results.pop(task_id, None)

    def remove(self, task_id: str) -> TaskResult | None:
        return self._results.pop(task_id, None)

    def completed_before(self, cutoff: datetime) -> list[str]:
        return [task_id for task_id, result in self._results.items() if result.completed_at < cutoff]


__all__ = ["ResultStore", "TaskStore"]
