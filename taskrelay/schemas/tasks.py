from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TaskKind(str, Enum):
    COMMAND = "command"
    FILE_READ = "file-read"
    FILE_WRITE = "file-write"
    BACKEND_CLI = "backend-cli"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"


class WireModel(BaseModel):
    """Base for payloads exchanged with callers and workers (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Task(WireModel):
    id: str
    type: TaskKind = TaskKind.COMMAND
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    # Kind-specific payload; unused fields stay None.
    command: str | None = None
    timeout: int | None = None
    path: str | None = None
    content: str | None = None
    encoding: str | None = None
    prompt: str | None = None
    session_id: str | None = None
    callback_channel: str | None = None
    callback_platform: str | None = None
    callback_container: str | None = None
    # Submission order, used for FIFO claims inside the broker only.
    sequence: int = Field(default=0, exclude=True)


class TaskResult(WireModel):
    task_id: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int = -1
    error: str | None = None
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] | None = None


class CommandTaskRequest(WireModel):
    command: str | None = None
    timeout: int | None = Field(default=None, ge=1)


class FileWriteRequest(WireModel):
    path: str | None = None
    content: str | None = None
    encoding: str | None = None


class FileReadRequest(WireModel):
    path: str | None = None


class BackendTaskRequest(WireModel):
    prompt: str | None = None
    timeout: int | None = Field(default=None, ge=1)
    session_id: str | None = None
    callback_channel: str | None = None
    callback_platform: str | None = None
    callback_container: str | None = None


class ResultReport(WireModel):
    task_id: str | None = None
    stdout: str | None = None
    stderr: str | None = None
    exit_code: int | None = None
    error: str | None = None
    metadata: dict[str, Any] | None = None


class TaskAccepted(WireModel):
    task_id: str
    message: str
    session_id: str | None = None


class TaskStatusView(WireModel):
    status: TaskStatus
    message: str = "Result not ready yet"


class HealthResponse(BaseModel):
    status: str = "ok"
    tasks: int
    results: int


__all__ = [
    "BackendTaskRequest",
    "CommandTaskRequest",
    "FileReadRequest",
    "FileWriteRequest",
    "HealthResponse",
    "ResultReport",
    "Task",
    "TaskAccepted",
    "TaskKind",
    "TaskResult",
    "TaskStatus",
    "TaskStatusView",
    "WireModel",
]
