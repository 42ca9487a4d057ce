"""Admin API key check for the sync operations endpoints."""

import hmac

from fastapi import HTTPException, Request

from subsync.config.settings import get_settings


def require_admin_key(request: Request) -> None:
    """FastAPI dependency: validate the X-Admin-Key header."""
    api_key = request.headers.get("X-Admin-Key")
    if not api_key:
        raise HTTPException(status_code=401, detail="Admin key required (X-Admin-Key header)")

    # Constant-time comparison
    if not hmac.compare_digest(api_key.encode(), get_settings().admin_api_key.encode()):
        raise HTTPException(status_code=401, detail="Invalid admin key")
