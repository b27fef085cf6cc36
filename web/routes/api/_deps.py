"""Shared dependencies for API route modules."""
import hmac
import time
from typing import Optional

from fastapi import Header, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from iskomarket.sync_service import ListingSyncService

# Shared limiter instance
limiter = Limiter(key_func=get_remote_address)

# Track startup time for uptime calculation
START_TIME = time.time()


def get_service(request: Request) -> ListingSyncService:
    """The sync service mounted by the app lifespan."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Listing sync is not running")
    return service


async def require_admin_token(
    request: Request,
    x_admin_token: Optional[str] = Header(None),
) -> None:
    """
    FastAPI dependency for diagnostics endpoints.

    Open when no admin token is configured; otherwise the X-Admin-Token
    header must match.
    """
    expected = getattr(request.app.state, "admin_token", "")
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=403, detail="Admin token required")
