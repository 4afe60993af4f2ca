from __future__ import annotations

import hashlib
from time import perf_counter
from typing import Iterable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from .logging import get_logger
from .security import token_fingerprint, token_matches

_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})


def _bearer_token(request: Request) -> str | None:
    authorization = request.headers.get("authorization") or ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """Emit one structured audit event per caller or worker request.

    Bodies are hashed rather than logged since commands and file contents may
    carry secrets. Idle worker polls are skipped.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        include_prefixes: Iterable[str] = ("/tasks", "/worker", "/files", "/claude"),
        exclude_prefixes: Iterable[str] = ("/worker/poll",),
    ) -> None:
        super().__init__(app)
        self._included = tuple(include_prefixes)
        self._excluded = tuple(exclude_prefixes)
        self._logger = get_logger(name="taskrelay.audit")

    def _audited(self, path: str) -> bool:
        if not path.startswith(self._included):
            return False
        return not path.startswith(self._excluded)

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        path = request.url.path
        if not self._audited(path):
            return await call_next(request)

        started = perf_counter()
        body = await request.body() if request.method in _BODY_METHODS else b""
        token = _bearer_token(request)
        settings = getattr(request.app.state, "settings", None)
        accepted = settings is not None and token_matches(token, settings.auth.token)

        response = await call_next(request)

        self._logger.info(
            "request_audited",
            method=request.method,
            path=path,
            status=response.status_code,
            token=token_fingerprint(token) if token else None,
            token_accepted=accepted,
            body_sha256=hashlib.sha256(body).hexdigest() if body else None,
            body_bytes=len(body),
            client_ip=request.client.host if request.client else None,
            duration_ms=round((perf_counter() - started) * 1000, 3),
        )
        return response


__all__ = ["AuditLoggingMiddleware"]
