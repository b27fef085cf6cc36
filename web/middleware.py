"""
Request logging middleware.

Every request runs under a correlation ID (taken from X-Request-ID when the
caller sends one) so API calls that trigger a manual refresh can be traced
through the sync core's logs. Metrics are keyed by route template, not raw
path, so listing IDs don't blow up the counter set.
"""
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from iskomarket.observability import correlation_context, get_logger, metrics

logger = get_logger(__name__)

# Polled by load balancers and dashboards; logged at debug only
QUIET_PATHS = frozenset({"/api/health", "/ws/stats"})


def _route_key(request: Request) -> str:
    route = request.scope.get("route")
    template = getattr(route, "path", None) or request.url.path
    return f"{request.method} {template}"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        quiet = request.url.path in QUIET_PATHS
        log = logger.debug if quiet else logger.info
        started = time.perf_counter()

        with correlation_context(request.headers.get("X-Request-ID")) as correlation_id:
            try:
                response = await call_next(request)
            except Exception as e:
                elapsed_ms = (time.perf_counter() - started) * 1000
                logger.exception(
                    f"{request.method} {request.url.path} raised {type(e).__name__}",
                    extra={"duration_ms": round(elapsed_ms, 2)},
                )
                metrics.increment(f"http_errors.{type(e).__name__}")
                raise

            elapsed_ms = (time.perf_counter() - started) * 1000
            key = _route_key(request)
            metrics.increment(f"http_requests.{key}")
            metrics.record_timing(key, elapsed_ms)

            if response.status_code >= 400:
                metrics.increment(f"http_errors.HTTP_{response.status_code}")
                log = logger.warning

            log(
                f"{request.method} {request.url.path} -> {response.status_code}",
                extra={
                    "status_code": response.status_code,
                    "duration_ms": round(elapsed_ms, 2),
                    "client_ip": request.client.host if request.client else "unknown",
                },
            )

            response.headers["X-Request-ID"] = correlation_id
            response.headers["X-Response-Time"] = f"{elapsed_ms:.2f}ms"
            return response
