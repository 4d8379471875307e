"""Middleware: API key authentication and client identification."""

from __future__ import annotations

import hashlib
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from reefid.api.presentation import PermissionDenied, ScreenState, reduce

if TYPE_CHECKING:
    from reefid.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False)

CLIENT_ID_HEADER = "X-Client-Id"


def _get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against the configured API key.

    If no API key is configured (REEFID_API_KEY not set), all requests pass.
    If configured, requests must include 'Authorization: Bearer <key>'.
    """
    settings = _get_settings_from_request(request)
    if settings.api_key is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), settings.api_key.encode()):
        denied = reduce(ScreenState(), PermissionDenied())
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"{denied.error} (invalid or missing API key)",
            headers={"WWW-Authenticate": "Bearer"},
        )


def client_key(request: Request) -> str | None:
    """Identify the caller for single-slot admission.

    Only callers that send an X-Client-Id header get a slot. Peers sharing an
    address (NAT, reverse proxy) are distinct users and must not supersede
    each other, so requests without the header return None.
    Only a digest is kept so raw identifiers do not end up in logs.
    """
    raw = request.headers.get(CLIENT_ID_HEADER)
    if not raw:
        return None
    return hashlib.sha256(raw.encode()).hexdigest()[:16]
