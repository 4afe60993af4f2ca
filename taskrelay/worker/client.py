from __future__ import annotations

from typing import Any

import httpx

from ..core.config import Settings, WorkerSettings
from ..core.exceptions import BrokerAuthError, BrokerUnavailableError
from ..core.logging import get_logger
from ..schemas.tasks import Task
from .executors import ExecutionOutcome

logger = get_logger(name=__name__)


class BrokerClient:
    """Worker-side HTTP client for the broker's ``/worker`` routes."""

    def __init__(self, settings: WorkerSettings, token: str, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=settings.broker_url.rstrip("/"),
            timeout=httpx.Timeout(settings.request_timeout_seconds),
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
        )

    @classmethod
    def from_settings(cls, settings: Settings, *, client: httpx.AsyncClient | None = None) -> "BrokerClient":
        return cls(settings.worker, settings.auth.token, client=client)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def poll(self, wait_ms: int | None = None) -> Task | None:
        """Long-poll the broker for the next task; ``None`` means the wait elapsed idle."""
        wait_ms = self._settings.long_poll_wait_ms if wait_ms is None else wait_ms
        # The request must outlive the broker's hold time.
        timeout = wait_ms / 1000 + self._settings.long_poll_slack_seconds
        response = await self._request("GET", "/worker/poll", params={"wait": wait_ms}, timeout=timeout)
        payload = response.json()
        if not payload:
            return None
        return Task.model_validate(payload)

    async def report(self, task_id: str, outcome: ExecutionOutcome) -> None:
        await self._request("POST", "/worker/result", json=outcome.to_report(task_id))

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        request_timeout = httpx.Timeout(timeout) if timeout is not None else httpx.USE_CLIENT_DEFAULT
        try:
            response = await self._client.request(method, path, json=json, params=params, timeout=request_timeout)
        except httpx.RequestError as exc:
            raise BrokerUnavailableError(f"{method} {path} failed: {exc}") from exc
        if response.status_code == httpx.codes.UNAUTHORIZED:
            raise BrokerAuthError("Broker rejected the worker token")
        if response.status_code >= 500:
            raise BrokerUnavailableError(f"{method} {path} returned {response.status_code}")
        if response.is_error:
            logger.warning("broker_request_rejected", method=method, path=path, status=response.status_code, body=response.text[:200])
            response.raise_for_status()
        return response


__all__ = ["BrokerClient"]
