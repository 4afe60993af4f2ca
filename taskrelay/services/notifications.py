"""Best-effort chat notifications about backend progress and completion.

Delivery never blocks result reporting: every message is sent from a tracked
background task and retried a bounded number of times. A message that still
cannot be delivered is logged and dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Protocol

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..core import metrics
from ..core.config import NotificationSettings, Settings
from ..core.exceptions import DeliveryError
from ..core.logging import get_logger, short_id

logger = get_logger(name=__name__)

PROGRESS_PREFIX = "📡 Backend working"
NO_OUTPUT = "(no output)"


class NotificationSender(Protocol):
    async def send(self, platform: str, channel: str, text: str, *, container: str | None = None) -> None:
        """Deliver ``text`` or raise :class:`DeliveryError`."""

    async def aclose(self) -> None: ...


def format_target(platform: str, channel: str) -> str:
    if platform == "discord":
        return f"channel:{channel}"
    return channel


def format_message(prefix: str, session_id: str | None, text: str) -> str:
    session_info = f"\n📎 sessionId: `{session_id[:8]}`" if session_id else ""
    return f"**{prefix}**{session_info}\n\n{text}"


class OpenClawCliSender:
    """Send chat messages through the OpenClaw CLI, natively or inside a container."""

    def __init__(self, settings: NotificationSettings) -> None:
        self._cli_path = settings.cli_path
        self._container = settings.container
        self._timeout = settings.send_timeout_seconds

    def build_command(self, platform: str, channel: str, text: str, container: str | None = None) -> list[str]:
        send_args = [
            "message",
            "send",
            "--channel",
            platform,
            "--target",
            format_target(platform, channel),
            "-m",
            text,
        ]
        # A per-task container wins over the configured one.
        target_container = container or self._container
        if target_container:
            return ["docker", "exec", target_container, "node", self._cli_path, *send_args]
        return ["node", self._cli_path, *send_args]

    async def send(self, platform: str, channel: str, text: str, *, container: str | None = None) -> None:
        command = self.build_command(platform, channel, text, container)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DeliveryError(f"Unable to start notification CLI: {exc}") from exc
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise DeliveryError(f"Notification CLI timed out after {self._timeout}s") from exc
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[:200]
            raise DeliveryError(f"Notification CLI exited with {process.returncode}: {detail}")

    async def aclose(self) -> None:
        return None


class WebhookSender:
    """POST notifications to an HTTP endpoint that forwards them to chat."""

    def __init__(self, settings: NotificationSettings, *, client: httpx.AsyncClient | None = None) -> None:
        if not settings.webhook_url:
            raise ValueError("notifications.webhook_url is required for webhook mode")
        self._url = settings.webhook_url
        headers = {"Content-Type": "application/json"}
        if settings.webhook_token:
            headers["Authorization"] = f"Bearer {settings.webhook_token}"
        self._headers = headers
        self._client = client or httpx.AsyncClient(timeout=settings.send_timeout_seconds)
        self._owns_client = client is None

    async def send(self, platform: str, channel: str, text: str, *, container: str | None = None) -> None:
        payload = {"platform": platform, "target": format_target(platform, channel), "message": text}
        if container:
            payload["container"] = container
        try:
            response = await self._client.post(self._url, json=payload, headers=self._headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Webhook delivery failed: {exc}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class NotificationDispatcher:
    def __init__(self, settings: NotificationSettings, sender: NotificationSender | None = None) -> None:
        self._settings = settings
        self._sender = sender
        self._pending: set[asyncio.Task[bool]] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotificationDispatcher":
        config = settings.notifications
        sender: NotificationSender | None
        if config.mode == "cli":
            sender = OpenClawCliSender(config)
        elif config.mode == "webhook":
            sender = WebhookSender(config)
        else:
            sender = None
        return cls(config, sender)

    @property
    def enabled(self) -> bool:
        return self._sender is not None

    @property
    def settings(self) -> NotificationSettings:
        return self._settings

    def dispatch(
        self,
        channel: str | None,
        text: str,
        *,
        prefix: str,
        session_id: str | None = None,
        platform: str = "discord",
        container: str | None = None,
    ) -> asyncio.Task[bool] | None:
        """Schedule delivery in the background; returns the tracking task, if any."""
        if self._sender is None or not channel:
            return None
        message = format_message(prefix, session_id, text)
        task = asyncio.create_task(self.deliver(platform, channel, message, container=container))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def deliver(self, platform: str, channel: str, message: str, *, container: str | None = None) -> bool:
        if self._sender is None:
            return False
        sender = self._sender
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._settings.max_attempts),
                wait=wait_fixed(self._settings.retry_delay_seconds),
                retry=retry_if_exception_type(DeliveryError),
                reraise=True,
            ):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    try:
                        await sender.send(platform, channel, message, container=container)
                    except DeliveryError as exc:
                        metrics.increment_notification_delivery(outcome="failure")
                        logger.warning(
                            "notification_attempt_failed",
                            channel=channel,
                            attempt=number,
                            max_attempts=self._settings.max_attempts,
                            error=str(exc)[:200],
                        )
                        raise
        except DeliveryError as exc:
            metrics.increment_notification_delivery(outcome="exhausted")
            logger.error("notification_dropped", channel=channel, platform=platform, error=str(exc)[:200])
            return False
        metrics.increment_notification_delivery(outcome="success")
        logger.info("notification_sent", channel=channel, platform=platform)
        return True

    def notify_completion(
        self,
        channel: str | None,
        *,
        succeeded: bool,
        duration_ms: int | None,
        stdout: str,
        session_id: str | None = None,
        platform: str = "discord",
        container: str | None = None,
    ) -> asyncio.Task[bool] | None:
        summary = stdout[-self._settings.max_message_chars :] if stdout else ""
        elapsed = f"{round(duration_ms / 1000)}s" if duration_ms is not None else "unknown"
        if succeeded:
            prefix = f"✅ Backend task completed (took {elapsed})"
        else:
            prefix = f"❌ Backend task failed (took {elapsed})"
        return self.dispatch(
            channel,
            summary or NO_OUTPUT,
            prefix=prefix,
            session_id=session_id,
            platform=platform,
            container=container,
        )

    async def wait_idle(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        if self._sender is not None:
            await self._sender.aclose()


class StreamingUpdates:
    """Coalesce backend progress into at most one message per debounce window."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        channel: str | None,
        *,
        platform: str = "discord",
        session_id: str | None = None,
        container: str | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._channel = channel
        self._platform = platform
        self._container = container
        self.session_id = session_id
        self._debounce = dispatcher.settings.debounce_seconds
        self._max_chars = dispatcher.settings.max_message_chars
        self._buffer: list[str] = []
        self._timer: asyncio.TimerHandle | None = None

    @property
    def active(self) -> bool:
        return self._dispatcher.enabled and bool(self._channel)

    def push(self, text: str) -> None:
        if not self.active or not text:
            return
        self._buffer.append(text)
        if self._timer is None:
            self._timer = asyncio.get_running_loop().call_later(self._debounce, self.flush)

    def flush(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._buffer:
            return
        text = "\n".join(self._buffer)[-self._max_chars :]
        self._buffer.clear()
        logger.debug("streaming_update_flushed", session_id=short_id(self.session_id), chars=len(text))
        self._dispatcher.dispatch(
            self._channel,
            text,
            prefix=PROGRESS_PREFIX,
            session_id=self.session_id,
            platform=self._platform,
            container=self._container,
        )

    def close(self) -> None:
        self.flush()


__all__ = [
    "NO_OUTPUT",
    "NotificationDispatcher",
    "NotificationSender",
    "OpenClawCliSender",
    "PROGRESS_PREFIX",
    "StreamingUpdates",
    "WebhookSender",
    "format_message",
    "format_target",
]
