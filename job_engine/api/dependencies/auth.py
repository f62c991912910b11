"""
X-API-Key check for the administrative routers.

Off unless API_AUTH_ENABLED=true; the expected key comes from API_KEY.
Both are read at import time, so tests reload this module after patching
the environment.
"""

import os
import secrets
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "false").lower() == "true"
API_KEY = os.getenv("API_KEY", "")

api_key_header = APIKeyHeader(
    name="X-API-Key",
    auto_error=False,
    description="Engine admin key, checked only when API_AUTH_ENABLED=true",
)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "ApiKey"},
    )


def _key_matches(presented: str) -> bool:
    # An empty configured key locks every caller out
    return bool(API_KEY) and secrets.compare_digest(presented, API_KEY)


async def verify_api_key(
    api_key: Optional[str] = Security(api_key_header),
) -> Optional[str]:
    """Router dependency; returns the accepted key, or None with auth off."""
    if not API_AUTH_ENABLED:
        return None
    if not api_key:
        raise _unauthorized("Missing API key. Send it in the X-API-Key header.")
    if not _key_matches(api_key):
        raise _unauthorized("Invalid API key")
    return api_key
