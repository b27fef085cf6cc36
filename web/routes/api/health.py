"""Health check endpoint."""
import time

from fastapi import APIRouter, Depends, Request

from iskomarket.observability import get_correlation_id, get_logger
from iskomarket.sync_service import ListingSyncService
from web.config import VERSION
from web.schemas import HealthResponse
from web.websocket_manager import manager
from ._deps import limiter, get_service, START_TIME

router = APIRouter()
logger = get_logger(__name__)


@router.get("/health", response_model=HealthResponse)
@limiter.limit("60/minute")
async def health_check(request: Request, service: ListingSyncService = Depends(get_service)):
    """Health check endpoint for Docker/load balancer monitoring."""
    status = service.get_status()
    metrics_snapshot = status.pop("metrics")

    healthy = service.is_mounted() and service.reconciler.last_refreshed_at is not None

    return {
        "status": "healthy" if healthy else "degraded",
        "version": VERSION,
        "uptime_seconds": int(time.time() - START_TIME),
        "correlation_id": get_correlation_id(),
        "sync": status,
        "metrics": metrics_snapshot,
        "websocket": manager.get_stats(),
    }
