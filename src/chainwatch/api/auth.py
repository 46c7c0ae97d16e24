"""Operator API-key check shared by every protected router."""

from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from chainwatch.settings import Settings, get_settings


def get_api_settings() -> Settings:
    """Dependency provider for the process settings."""

    return get_settings()


def require_token(
    x_api_key: Optional[str] = Header(None),
    settings: Settings = Depends(get_api_settings),
) -> None:
    """Validate the ``X-API-KEY`` header against ``settings.api.key``.

    Raises:
        HTTPException: 401 if missing, 403 if it does not match.
    """

    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-API-KEY")
    expected = settings.api.key
    if not expected or not secrets.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")
