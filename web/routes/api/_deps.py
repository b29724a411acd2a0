"""Shared dependencies for API route modules."""
import time
from typing import Optional

from fastapi import Header, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from core.stats_service import StatsService, get_stats_service
from web.config import ADMIN_TOKEN

# Shared limiter instance
limiter = Limiter(key_func=get_remote_address)

# Track startup time for uptime calculation
START_TIME = time.time()


async def get_service() -> StatsService:
    return await get_stats_service()


def get_scheduler(request: Request):
    """Scheduler started by the app, or None when disabled."""
    return getattr(request.app.state, "scheduler", None)


async def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    """Reject admin calls without the configured token."""
    if ADMIN_TOKEN and x_admin_token != ADMIN_TOKEN:
        raise HTTPException(status_code=403, detail="Admin token required")
