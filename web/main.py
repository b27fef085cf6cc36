"""
FastAPI web application exposing the listing sync service to UI components.
"""
import os
from contextlib import asynccontextmanager
from typing import Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, ORJSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.gzip import GZipMiddleware

from iskomarket.backend import close_backend
from iskomarket.config import ConfigurationError, validate_config
from iskomarket.events import EventBus, ListingEvent
from iskomarket.observability import get_logger, setup_logging
from iskomarket.sync_service import ListingSyncService, get_sync_service
from web.config import ADMIN_TOKEN, VERSION, WEB_HOST, WEB_PORT
from web.middleware import RequestLoggingMiddleware
from web.routes import api, websocket
from web.routes.api._deps import limiter
from web.websocket_manager import LISTINGS_ROOM, manager as ws_manager

# Configure structured logging
# Use JSON format in production (LOG_FORMAT=json), human-readable otherwise
log_format = os.getenv("LOG_FORMAT", "text")
log_level = os.getenv("LOG_LEVEL", "INFO")
setup_logging(level=log_level, json_format=(log_format == "json"))
logger = get_logger(__name__)


def _register_event_handlers(bus: EventBus) -> Dict[ListingEvent, Callable]:
    """Forward every listing event to connected WebSocket clients."""
    handlers = {}

    for event_type in ListingEvent:
        async def forward(data: dict, _event: ListingEvent = event_type):
            await ws_manager.broadcast(LISTINGS_ROOM, _event.value, data)

        bus.subscribe(event_type, forward)
        handlers[event_type] = forward

    return handlers


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("IskoMarket listing sync starting...")

    service: Optional[ListingSyncService] = getattr(app.state, "sync_service", None)
    owns_backend = service is None
    if service is None:
        # Validate configuration early - fail fast with clear errors
        try:
            validate_config()
            logger.info("Configuration validated")
        except ConfigurationError as e:
            logger.critical(f"Configuration error: {e}")
            raise SystemExit(1)
        service = get_sync_service()
        app.state.sync_service = service

    handlers = _register_event_handlers(service.events)
    await service.mount()
    logger.info(f"Listing sync ready ({len(service.snapshot)} listings)")

    try:
        yield
    finally:
        await service.unmount()
        for event_type, handler in handlers.items():
            service.events.unsubscribe(event_type, handler)
        if owns_backend:
            await close_backend()
        logger.info("IskoMarket listing sync stopped")


def create_app(
    sync_service: Optional[ListingSyncService] = None,
    admin_token: Optional[str] = None,
) -> FastAPI:
    """Build the app; pass a service to run against a custom backend."""
    app = FastAPI(
        title="IskoMarket Listings",
        description="Live marketplace listing feed",
        version=VERSION,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.sync_service = sync_service
    app.state.admin_token = ADMIN_TOKEN if admin_token is None else admin_token
    app.state.limiter = limiter

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        logger.warning(f"Rate limit exceeded for {get_remote_address(request)}")
        return JSONResponse(
            status_code=429,
            content={
                "error": "Rate limit exceeded",
                "detail": "Too many requests. Please try again later.",
                "retry_after": exc.detail,
            },
        )

    # Add request logging middleware (adds correlation IDs and timing)
    app.add_middleware(RequestLoggingMiddleware)

    # Add Gzip compression (min 500 bytes to compress)
    app.add_middleware(GZipMiddleware, minimum_size=500)

    app.include_router(api.router, prefix="/api")
    app.include_router(websocket.router)  # WebSocket routes (no /api prefix)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("web.main:app", host=WEB_HOST, port=WEB_PORT)
