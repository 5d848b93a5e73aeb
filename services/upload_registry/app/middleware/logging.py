"""Request/response logging middleware for Upload Registry service."""

import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from shared.utils.logging import get_correlation_id, get_logger

logger = get_logger(__name__)


def get_client_ip(request: Request) -> str:
    """Extract client IP address from request."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for structured request/response logging.

    Logs request completion with timing; failures are logged with the
    exception type and re-raised.
    """

    def __init__(
        self,
        app,
        enabled: bool = True,
        exclude_paths: list[str] | None = None,
    ):
        """Initialize middleware.

        Args:
            app: FastAPI application
            enabled: Whether logging is enabled
            exclude_paths: Paths to exclude from logging (e.g., health checks)
        """
        super().__init__(app)
        self.enabled = enabled
        self.exclude_paths = exclude_paths or ["/health", "/ready", "/metrics"]

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        """Process request with logging."""
        path = request.url.path
        if not self.enabled or any(path.endswith(excluded) for excluded in self.exclude_paths):
            return await call_next(request)

        method = request.method
        client_ip = get_client_ip(request)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                correlation_id=get_correlation_id(),
                method=method,
                path=path,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                client_ip=client_ip,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        log_method = logger.info if response.status_code < 400 else logger.warning
        log_method(
            "request_completed",
            correlation_id=get_correlation_id(),
            method=method,
            path=path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            client_ip=client_ip,
        )
        return response
