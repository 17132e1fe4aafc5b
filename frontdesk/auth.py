"""Admin access for the call inspection and config endpoints.

The telephony gateway drives ``/turns`` and hangup without credentials.
Everything under ``/admin`` needs ADMIN_API_KEY: as a bearer token over
HTTP, or as ``?token=`` on the audit event WebSocket. With no key set the
admin surface is open in debug mode and closed otherwise.
"""

from __future__ import annotations

import logging
import secrets
from enum import Enum
from typing import Optional

from fastapi import Depends, HTTPException, Query, WebSocketException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from frontdesk.config import settings

log = logging.getLogger("frontdesk.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


class AdminAccess(str, Enum):
    GRANTED = "granted"
    NO_KEY = "no_key"          # key unset outside debug mode
    BAD_TOKEN = "bad_token"


def admin_access(token: Optional[str]) -> AdminAccess:
    key = settings.admin_api_key
    if not key:
        return AdminAccess.GRANTED if settings.debug else AdminAccess.NO_KEY
    if token and secrets.compare_digest(token.encode("utf-8"), key.encode("utf-8")):
        return AdminAccess.GRANTED
    return AdminAccess.BAD_TOKEN


async def require_admin_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    access = admin_access(credentials.credentials if credentials else None)
    if access == AdminAccess.NO_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin endpoints are closed: ADMIN_API_KEY is not set.",
        )
    if access == AdminAccess.BAD_TOKEN:
        log.warning("Admin request refused: bad or missing bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token does not match ADMIN_API_KEY.",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin_ws(token: str = Query(default="")) -> None:
    access = admin_access(token)
    if access == AdminAccess.NO_KEY:
        raise WebSocketException(code=4003, reason="ADMIN_API_KEY is not set")
    if access == AdminAccess.BAD_TOKEN:
        log.warning("Audit stream refused: bad or missing token")
        raise WebSocketException(code=4001, reason="Bad token")
