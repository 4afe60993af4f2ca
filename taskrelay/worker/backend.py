"""Conversational turns against the coding-agent CLI.

The CLI runs in ``--print --output-format stream-json`` mode and emits one
JSON event per line: a ``system``/``init`` event carrying the backend session
id, ``assistant`` events with text and tool calls, and a closing ``result``
event. The session runner sits on top of the raw process and decides between
resuming a known backend session and starting a new one.
"""

from __future__ import annotations

import asyncio
import json
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, Protocol

from ..core.config import BackendSettings, Settings, WorkerSettings
from ..core.exceptions import BackendSessionNotFound, CollaboratorError, ExecutionTimeoutError
from ..core.logging import get_logger, short_id
from ..schemas.tasks import Task
from ..services.notifications import NotificationDispatcher, StreamingUpdates
from .executors import ExecutionOutcome, kill_process_group
from .sessions import SessionReconciler

logger = get_logger(name=__name__)

# Bookkeeping tools produce no useful progress text.
SILENT_TOOLS = frozenset({"TodoWrite", "TaskCreate", "TaskUpdate", "TaskList", "TaskGet"})
READ_ONLY_TOOLS = frozenset({"Read", "Glob", "Grep", "WebFetch", "WebSearch"})

TEXT_PREVIEW_CHARS = 500
TOOL_PREVIEW_CHARS = 80

_MISSING_SESSION = re.compile(r"no conversation found", re.IGNORECASE)

EventCallback = Callable[[dict[str, Any]], None]


def format_assistant_message(event: dict[str, Any]) -> str | None:
    """Render an ``assistant`` event as progress text, or ``None`` when nothing is worth showing."""
    if event.get("type") != "assistant":
        return None
    content = (event.get("message") or {}).get("content")
    if not isinstance(content, list):
        return None

    parts: list[str] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text" and block.get("text"):
            parts.append(str(block["text"])[:TEXT_PREVIEW_CHARS])
        elif block.get("type") == "tool_use":
            name = block.get("name") or "tool"
            if name in SILENT_TOOLS or name in READ_ONLY_TOOLS:
                continue
            tool_input = block.get("input")
            preview = ""
            if isinstance(tool_input, dict):
                preview = str(
                    tool_input.get("command") or tool_input.get("file_path") or tool_input.get("description") or ""
                )[:TOOL_PREVIEW_CHARS]
            parts.append(f"🔧 {name}: {preview}" if preview else f"🔧 {name}")
    return "\n".join(parts) if parts else None


def find_screenshot(text: str, pattern: str) -> str | None:
    match = re.search(pattern, text)
    if match is None:
        return None
    return match.group(1).strip() or None


@dataclass(slots=True)
class BackendTurn:
    session_id: str | None = None
    result_text: str = ""
    assistant_text: list[str] = field(default_factory=list)
    subtype: str | None = None
    errors: list[str] = field(default_factory=list)
    stderr: str = ""
    return_code: int | None = None
    cost_usd: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.subtype in (None, "success") and self.return_code == 0 and not self.errors

    @property
    def output(self) -> str:
        if self.result_text:
            return self.result_text
        if self.errors:
            return "\n".join(self.errors)
        return "\n".join(self.assistant_text)


class Backend(Protocol):
    async def run_turn(
        self,
        prompt: str,
        *,
        resume_id: str | None,
        timeout_seconds: float,
        on_event: EventCallback | None = None,
    ) -> BackendTurn: ...


class _Transcript:
    """Append-only live log of backend output; write failures are ignored."""

    def __init__(self, path: str | None) -> None:
        self._path = Path(path).expanduser() if path else None

    def write(self, text: str) -> None:
        if self._path is None:
            return
        try:
            with open(self._path, "a", encoding="utf-8") as handle:
                handle.write(text)
        except OSError as exc:
            logger.debug("transcript_write_failed", path=str(self._path), error=str(exc))

    def banner(self, label: str) -> None:
        rule = "=" * 60
        self.write(f"\n{rule}\n[{datetime.now(timezone.utc).isoformat()}] {label}\n{rule}\n")


class ClaudeCodeBackend:
    def __init__(self, settings: BackendSettings, worker: WorkerSettings) -> None:
        self._settings = settings
        self._extra_path = list(worker.extra_path)
        self._line_limit = worker.max_output_bytes
        self._transcript = _Transcript(settings.transcript_path)

    def build_argv(self, prompt: str, resume_id: str | None = None) -> list[str]:
        argv = [self._settings.executable, "--print", "--output-format", "stream-json", "--verbose"]
        if resume_id:
            argv.extend(["--resume", resume_id])
        argv.extend(self._settings.extra_args)
        argv.append(prompt)
        return argv

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        # The CLI refuses to start when it believes it is nested in another session.
        env.pop("CLAUDECODE", None)
        env["PATH"] = os.pathsep.join(entry for entry in [*self._extra_path, env.get("PATH", "")] if entry)
        return env

    async def run_turn(
        self,
        prompt: str,
        *,
        resume_id: str | None,
        timeout_seconds: float,
        on_event: EventCallback | None = None,
    ) -> BackendTurn:
        turn = BackendTurn(session_id=resume_id)
        cwd = self._settings.working_dir or str(Path.home())
        self._transcript.banner(f"backend start: {prompt[:80]}")
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_argv(prompt, resume_id),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=self.build_env(),
                limit=self._line_limit,
                start_new_session=True,
            )
        except OSError as exc:
            raise CollaboratorError(f"Unable to start backend: {exc}") from exc

        stderr_task = asyncio.create_task(self._collect_stderr(process.stderr))
        try:
            await asyncio.wait_for(self._consume(process, turn, on_event), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            await kill_process_group(process, [stderr_task], drain=False)
            self._transcript.banner("backend timed out")
            metadata = {"sessionId": turn.session_id} if turn.session_id else None
            raise ExecutionTimeoutError(stdout=turn.output, metadata=metadata) from None
        except ValueError as exc:
            # readline() raises once a single event outgrows the stream limit.
            await kill_process_group(process, [stderr_task], drain=False)
            self._transcript.banner("backend output unreadable")
            raise CollaboratorError(f"Backend output could not be read: {exc}") from exc
        except BaseException:
            await kill_process_group(process, [stderr_task], drain=False)
            self._transcript.banner("backend run aborted")
            raise
        turn.stderr = (await stderr_task).strip()
        turn.return_code = process.returncode
        self._transcript.banner(f"backend finished (exit {turn.return_code})")

        if resume_id and not turn.succeeded:
            if _MISSING_SESSION.search(turn.stderr) or any(_MISSING_SESSION.search(err) for err in turn.errors):
                raise BackendSessionNotFound(f"Backend session {resume_id} is no longer available")
        return turn

    async def _consume(self, process: asyncio.subprocess.Process, turn: BackendTurn, on_event: EventCallback | None) -> None:
        assert process.stdout is not None
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            raw = line.decode("utf-8", errors="replace").strip()
            if not raw:
                continue
            try:
                event = json.loads(raw)
            except ValueError:
                self._transcript.write(raw + "\n")
                continue
            if not isinstance(event, dict):
                continue
            self._apply(event, turn)
            if on_event is not None:
                on_event(event)
        await process.wait()

    def _apply(self, event: dict[str, Any], turn: BackendTurn) -> None:
        kind = event.get("type")
        if kind == "system" and event.get("subtype") == "init" and event.get("session_id"):
            turn.session_id = str(event["session_id"])
            logger.info("backend_session_started", backend_session=short_id(turn.session_id))
        elif kind == "assistant":
            for block in (event.get("message") or {}).get("content") or []:
                if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                    turn.assistant_text.append(str(block["text"]))
                    self._transcript.write(str(block["text"]) + "\n")
        elif kind == "result":
            turn.subtype = event.get("subtype") or "success"
            if event.get("session_id"):
                turn.session_id = str(event["session_id"])
            if turn.subtype == "success" and not event.get("is_error"):
                turn.result_text = str(event.get("result") or "")
            else:
                errors = event.get("errors") or []
                turn.errors = [str(item) for item in errors] or [str(event.get("result") or turn.subtype)]
            turn.cost_usd = event.get("total_cost_usd")
            logger.info(
                "backend_result",
                subtype=turn.subtype,
                duration_ms=event.get("duration_ms"),
                cost_usd=turn.cost_usd,
            )

    @staticmethod
    async def _collect_stderr(stream: asyncio.StreamReader | None) -> str:
        if stream is None:
            return ""
        data = await stream.read()
        return data.decode("utf-8", errors="replace")


class BackendSessionRunner:
    """Run one ``backend-cli`` task, reconciling caller and backend session ids."""

    def __init__(
        self,
        settings: Settings,
        *,
        backend: Backend,
        sessions: SessionReconciler,
        notifications: NotificationDispatcher | None = None,
    ) -> None:
        self._settings = settings
        self._backend = backend
        self._sessions = sessions
        self._notifications = notifications

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        sessions: SessionReconciler,
        notifications: NotificationDispatcher | None = None,
    ) -> "BackendSessionRunner":
        backend = ClaudeCodeBackend(settings.backend, settings.worker)
        return cls(settings, backend=backend, sessions=sessions, notifications=notifications)

    async def run(self, task: Task) -> ExecutionOutcome:
        prompt = task.prompt or ""
        resolution = self._sessions.resolve(task.session_id)
        timeout_ms = (task.timeout or self._settings.worker.default_timeout_ms) + self._settings.backend.timeout_grace_ms
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        updates = self._streaming(task, resolution.backend_id)
        started = perf_counter()

        def on_event(event: dict[str, Any]) -> None:
            if event.get("type") == "system" and event.get("session_id") and updates is not None:
                updates.session_id = str(event["session_id"])
            formatted = format_assistant_message(event)
            if formatted and updates is not None:
                updates.push(formatted)

        logger.info(
            "backend_turn_started",
            task_id=short_id(task.id),
            caller_session=short_id(task.session_id),
            backend_session=short_id(resolution.backend_id),
            mode="resume" if resolution.resume else "new",
        )
        try:
            try:
                turn = await self._backend.run_turn(
                    prompt,
                    resume_id=resolution.backend_id,
                    timeout_seconds=max(0.0, deadline - loop.time()),
                    on_event=on_event,
                )
            except BackendSessionNotFound:
                if resolution.backend_id is None:
                    raise
                logger.warning(
                    "backend_session_missing",
                    caller_session=short_id(task.session_id),
                    backend_session=short_id(resolution.backend_id),
                )
                await asyncio.to_thread(self._sessions.forget, resolution.backend_id)
                turn = await self._backend.run_turn(
                    prompt,
                    resume_id=None,
                    timeout_seconds=max(0.0, deadline - loop.time()),
                    on_event=on_event,
                )
        except ExecutionTimeoutError as exc:
            backend_id = exc.metadata.get("sessionId")
            if backend_id:
                await asyncio.to_thread(self._sessions.record_turn, task.session_id, backend_id, task.callback_channel)
            raise
        finally:
            if updates is not None:
                updates.close()

        if turn.session_id:
            # The table is persisted with fsync on every change.
            await asyncio.to_thread(self._sessions.record_turn, task.session_id, turn.session_id, task.callback_channel)

        output = turn.output.strip()
        metadata: dict[str, Any] = {}
        if turn.session_id:
            metadata["sessionId"] = turn.session_id
        screenshot = find_screenshot(output, self._settings.backend.screenshot_marker) or find_screenshot(
            "\n".join(turn.assistant_text), self._settings.backend.screenshot_marker
        )
        if screenshot:
            metadata["screenshotPath"] = screenshot
            logger.info("backend_screenshot_detected", task_id=short_id(task.id), screenshot_path=screenshot)

        duration_ms = int((perf_counter() - started) * 1000)
        logger.info(
            "backend_turn_finished",
            task_id=short_id(task.id),
            backend_session=short_id(turn.session_id),
            succeeded=turn.succeeded,
            duration_ms=duration_ms,
            output_chars=len(output),
        )
        if turn.succeeded:
            return ExecutionOutcome(stdout=output, stderr=turn.stderr, exit_code=0, metadata=metadata, duration_ms=duration_ms)
        if turn.subtype and turn.subtype != "success":
            error = f"Backend {turn.subtype}"
        else:
            error = f"Exit code {turn.return_code}"
        return ExecutionOutcome(
            stdout=output,
            stderr="\n".join(turn.errors) or turn.stderr,
            exit_code=turn.return_code if turn.return_code and turn.return_code > 0 else 1,
            error=error,
            metadata=metadata,
            duration_ms=duration_ms,
        )

    def _streaming(self, task: Task, backend_id: str | None) -> StreamingUpdates | None:
        if self._notifications is None or not task.callback_channel:
            return None
        return StreamingUpdates(
            self._notifications,
            task.callback_channel,
            platform=task.callback_platform or "discord",
            session_id=backend_id or task.session_id,
            container=task.callback_container,
        )


__all__ = [
    "Backend",
    "BackendSessionRunner",
    "BackendTurn",
    "ClaudeCodeBackend",
    "READ_ONLY_TOOLS",
    "SILENT_TOOLS",
    "find_screenshot",
    "format_assistant_message",
]
