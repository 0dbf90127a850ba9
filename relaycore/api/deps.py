"""Shared API dependencies."""

from typing import AsyncGenerator, Optional

import httpx
from fastapi import Depends, Header, HTTPException

from relaycore.config import Settings, get_settings
from relaycore.services.signing import check_bearer


def settings_dep() -> Settings:
    return get_settings()


async def get_http_client() -> AsyncGenerator[Optional[httpx.AsyncClient], None]:
    """Outbound HTTP client; ``None`` lets the dispatcher open its own."""
    yield None


async def require_service_key(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(settings_dep),
):
    if not settings.service_api_key:
        return
    if not check_bearer(authorization, settings.service_api_key):
        raise HTTPException(401, "Missing or invalid Authorization header")
