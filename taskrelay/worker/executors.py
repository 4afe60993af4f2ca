from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import os
import signal
from dataclasses import dataclass, field
from pathlib import Path
from time import perf_counter
from typing import TYPE_CHECKING, Any

from ..core import metrics
from ..core.config import Settings, WorkerSettings
from ..core.exceptions import CollaboratorError, ExecutionTimeoutError
from ..core.logging import get_logger, short_id
from ..schemas.tasks import Task, TaskKind

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .backend import BackendSessionRunner

logger = get_logger(name=__name__)

TRUNCATION_NOTICE = "\n[output truncated]"


@dataclass(slots=True)
class ExecutionOutcome:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    duration_ms: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @classmethod
    def failure(cls, message: str, *, exit_code: int = -1, stdout: str = "", metadata: dict[str, Any] | None = None) -> "ExecutionOutcome":
        return cls(stdout=stdout, stderr=message, exit_code=exit_code, error=message, metadata=dict(metadata or {}))

    def to_report(self, task_id: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "taskId": task_id,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exitCode": self.exit_code,
            "error": self.error,
        }
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload


class _Capture:
    """Bounded buffer for one output stream of a child process."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._chunks: list[bytes] = []
        self._size = 0
        self.truncated = False

    async def drain(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                return
            # Keep reading past the cap so the child never blocks on a full pipe.
            room = self._limit - self._size
            if room <= 0 or len(chunk) > room:
                self.truncated = True
            if room > 0:
                self._chunks.append(chunk[:room])
                self._size += min(room, len(chunk))

    def text(self) -> str:
        text = b"".join(self._chunks).decode("utf-8", errors="replace")
        return text + TRUNCATION_NOTICE if self.truncated else text


class ShellRunner:
    """Run command strings through the configured shell with a hard timeout."""

    def __init__(self, settings: WorkerSettings) -> None:
        self._shell = settings.shell
        self._login = settings.login_shell
        self._extra_path = list(settings.extra_path)
        self._max_output = settings.max_output_bytes

    def build_argv(self, command: str) -> list[str]:
        argv = [self._shell]
        if self._login:
            argv.append("-l")
        argv.extend(["-c", command.strip()])
        return argv

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        entries = [env.get("PATH", "")] + self._extra_path
        env["PATH"] = os.pathsep.join(entry for entry in entries if entry)
        return env

    async def run(self, command: str, timeout_ms: int) -> ExecutionOutcome:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_argv(command),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
                start_new_session=True,
            )
        except OSError as exc:
            raise CollaboratorError(f"Unable to start shell: {exc}") from exc

        stdout_capture = _Capture(self._max_output)
        stderr_capture = _Capture(self._max_output)
        readers = [
            asyncio.create_task(stdout_capture.drain(process.stdout)),
            asyncio.create_task(stderr_capture.drain(process.stderr)),
        ]
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout_ms / 1000)
            await asyncio.gather(*readers)
        except asyncio.TimeoutError:
            await kill_process_group(process, readers, drain=True)
            raise ExecutionTimeoutError(stdout=stdout_capture.text()) from None
        except BaseException:
            # Cancellation included: the command must not outlive its task.
            await kill_process_group(process, readers, drain=False)
            raise

        stdout = stdout_capture.text()
        stderr = stderr_capture.text()
        exit_code = process.returncode if process.returncode is not None else -1
        error = None
        if exit_code != 0:
            error = f"Command failed with exit code {exit_code}: {command.strip()[:200]}"
        return ExecutionOutcome(stdout=stdout, stderr=stderr, exit_code=exit_code, error=error)


async def kill_process_group(process: asyncio.subprocess.Process, readers: list[asyncio.Task[Any]], *, drain: bool) -> None:
    """Kill the process group of ``process`` and settle its stream readers.

    Children of the shell keep the pipes open unless the whole group goes.
    With ``drain`` the readers collect what was written before the kill.
    """
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(process.pid, signal.SIGKILL)
    await process.wait()
    if not drain:
        for reader in readers:
            reader.cancel()
    await asyncio.gather(*readers, return_exceptions=True)


def expand_home(path: str) -> Path:
    return Path(path.strip()).expanduser()


class FileOperations:
    """Filesystem helpers; failures become exit code 1 with the error message."""

    async def write(self, path: str, content: str | None, encoding: str | None = "utf8") -> ExecutionOutcome:
        return await asyncio.to_thread(self._write, path, content, encoding)

    async def read(self, path: str) -> ExecutionOutcome:
        return await asyncio.to_thread(self._read, path)

    def _write(self, path: str, content: str | None, encoding: str | None) -> ExecutionOutcome:
        target = expand_home(path)
        text = (content or "").strip()
        try:
            data = base64.b64decode(text, validate=True) if encoding == "base64" else text.encode("utf-8")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except (OSError, binascii.Error) as exc:
            logger.warning("file_write_failed", path=str(target), error=str(exc))
            return ExecutionOutcome.failure(str(exc), exit_code=1)
        logger.info("file_written", path=str(target), bytes=len(data))
        return ExecutionOutcome(stdout=f"File written: {target}")

    def _read(self, path: str) -> ExecutionOutcome:
        target = expand_home(path)
        try:
            content = target.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("file_read_failed", path=str(target), error=str(exc))
            return ExecutionOutcome.failure(str(exc), exit_code=1)
        return ExecutionOutcome(stdout=content)


class TaskExecutor:
    def __init__(
        self,
        settings: Settings,
        *,
        shell: ShellRunner | None = None,
        files: FileOperations | None = None,
        backend: "BackendSessionRunner | None" = None,
    ) -> None:
        self._settings = settings
        self._shell = shell or ShellRunner(settings.worker)
        self._files = files or FileOperations()
        self._backend = backend

    async def execute(self, task: Task) -> ExecutionOutcome:
        """Run ``task`` and always return an outcome; collaborator failures are captured."""
        started = perf_counter()
        exit_code = -1
        metrics.mark_execution_started()
        try:
            try:
                outcome = await self._dispatch(task)
            except ExecutionTimeoutError as exc:
                logger.warning("task_timed_out", task_id=short_id(task.id), kind=task.type.value)
                outcome = ExecutionOutcome.failure(str(exc) or "Timeout", stdout=exc.stdout, metadata=exc.metadata)
            except CollaboratorError as exc:
                logger.warning("task_collaborator_failed", task_id=short_id(task.id), kind=task.type.value, error=str(exc))
                outcome = ExecutionOutcome.failure(str(exc))
            exit_code = outcome.exit_code
            if outcome.duration_ms is None:
                outcome.duration_ms = int((perf_counter() - started) * 1000)
            return outcome
        finally:
            metrics.mark_execution_completed(kind=task.type.value, exit_code=exit_code, latency=perf_counter() - started)

    async def _dispatch(self, task: Task) -> ExecutionOutcome:
        if task.type is TaskKind.FILE_WRITE:
            return await self._files.write(task.path or "", task.content, task.encoding)
        if task.type is TaskKind.FILE_READ:
            return await self._files.read(task.path or "")
        if task.type is TaskKind.BACKEND_CLI:
            if self._backend is None:
                raise CollaboratorError("Backend runner is not configured")
            return await self._backend.run(task)
        if not task.command:
            raise CollaboratorError("Task has no command")
        timeout_ms = task.timeout or self._settings.worker.default_timeout_ms
        return await self._shell.run(task.command, timeout_ms)


__all__ = [
    "ExecutionOutcome",
    "FileOperations",
    "ShellRunner",
    "TRUNCATION_NOTICE",
    "TaskExecutor",
    "expand_home",
    "kill_process_group",
]
