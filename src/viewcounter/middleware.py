"""
Logging Middleware for the View Counter Gateway

Request/response logging with timing, request IDs and metrics.
"""

import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .logging import EventType, ViewCounterLogger, clear_request_id, get_logger, set_request_id
from .metrics import MetricNames, MetricsCollector

BADGE_ROUTE = "/stats/{service}/{user}/count.svg"
UNMATCHED_ROUTE = "unmatched"


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for structured request/response logging and metrics."""

    def __init__(
        self,
        app: ASGIApp,
        logger: Optional[ViewCounterLogger] = None,
        metrics: Optional[MetricsCollector] = None,
        exclude_paths: Optional[list] = None,
    ):
        """
        Args:
            app: ASGI application
            logger: Structured logger shared with the rest of the gateway
            metrics: Metrics collector of the owning app
            exclude_paths: Paths that are not logged (health checks)
        """
        super().__init__(app)
        self.logger = logger or get_logger()
        self.metrics = metrics or MetricsCollector()
        self.exclude_paths = exclude_paths or ["/healthz"]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.exclude_paths:
            return await call_next(request)

        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:12]}"
        set_request_id(request_id)

        start_time = time.time()
        method = request.method
        path = request.url.path
        route = self._normalize_path(path)

        try:
            self.logger.log_request_start(
                method=method,
                path=path,
                metadata={
                    "user_agent": request.headers.get("user-agent"),
                    "client_ip": self._get_client_ip(request),
                },
            )

            response = await call_next(request)

            duration_ms = (time.time() - start_time) * 1000
            self.logger.log_request_end(
                method=method,
                path=path,
                status_code=response.status_code,
                duration_ms=duration_ms,
                metadata={"content_type": response.headers.get("content-type", "")},
            )
            self.metrics.record_timer(
                MetricNames.REQUEST_DURATION, duration_ms, labels={"method": method, "path": route}
            )
            self.metrics.increment_counter(
                MetricNames.REQUESTS_TOTAL,
                labels={"method": method, "path": route, "status": str(response.status_code)},
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self.logger.error(
                f"Request processing error: {method} {path}",
                event_type=EventType.GATEWAY_ERROR,
                method=method,
                path=path,
                duration_ms=duration_ms,
                metadata={"error": str(e), "error_type": type(e).__name__},
            )
            raise

        finally:
            clear_request_id()

    def _get_client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        if request.client:
            return request.client.host

        return "unknown"

    def _normalize_path(self, path: str) -> str:
        """Map a request path onto a fixed set of metric keys."""
        parts = path.strip("/").split("/")
        if len(parts) == 4 and parts[0] == "stats" and parts[3] == "count.svg":
            return BADGE_ROUTE
        if path in self.exclude_paths:
            return path
        # Anything else is a 404; raw paths would grow the metric maps without bound
        return UNMATCHED_ROUTE


def add_logging_middleware(app, **kwargs):
    """Add logging middleware to FastAPI app."""
    app.add_middleware(LoggingMiddleware, **kwargs)
    return app
