from __future__ import annotations

import hashlib
import hmac

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..dependencies import get_app_settings
from .config import Settings

bearer_scheme = HTTPBearer(auto_error=False)


def token_matches(presented: str | None, expected: str) -> bool:
    if not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def token_fingerprint(token: str) -> str:
    """Non-reversible prefix of a token hash, safe to log."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:8]


def require_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_app_settings),
) -> None:
    """Reject the request unless it carries the shared bearer token."""
    presented = credentials.credentials if credentials is not None else None
    if not token_matches(presented, settings.auth.token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


__all__ = ["bearer_scheme", "require_token", "token_fingerprint", "token_matches"]
