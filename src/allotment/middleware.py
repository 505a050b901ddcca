"""
Logging Middleware for the assignment API

FastAPI middleware for request/response logging with timing, status tracking,
and metrics collection integration.
"""

import time
import uuid
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .logging import EventType, clear_run_id, get_logger, get_run_id, set_run_id
from .metrics import MetricNames, get_metrics


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for structured request/response logging and metrics."""

    def __init__(
        self,
        app: ASGIApp,
        logger_name: str = "allotment.middleware",
        exclude_paths: Optional[list] = None,
    ):
        """
        Initialize logging middleware.

        Args:
            app: ASGI application
            logger_name: Name for the logger instance
            exclude_paths: List of paths to exclude from logging
        """
        super().__init__(app)
        self.logger = get_logger(logger_name)
        self.metrics = get_metrics()
        self.exclude_paths = exclude_paths or ["/health", "/metrics", "/favicon.ico"]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process request and response with logging and metrics."""
        if self._should_exclude_path(request.url.path):
            return await call_next(request)

        request_id = self._get_or_generate_request_id(request)
        set_run_id(request_id)

        start_time = time.time()
        method = request.method
        path = request.url.path
        normalized = self._normalize_path(path)
        job_id = self._extract_job_id(request)

        try:
            self.logger.log_request_start(
                method=method,
                path=path,
                job_id=job_id,
                metadata={
                    "request_id": request_id,
                    "query_params": str(request.query_params) if request.query_params else None,
                    "client_ip": self._get_client_ip(request),
                },
            )

            response = await call_next(request)

            duration_ms = (time.time() - start_time) * 1000
            status_code = response.status_code

            self.logger.log_request_end(
                method=method,
                path=path,
                status_code=status_code,
                duration_ms=duration_ms,
                job_id=job_id,
                metadata={"request_id": request_id},
            )

            self.metrics.record_timer(
                MetricNames.REQUEST_DURATION,
                duration_ms,
                labels={"method": method, "path": normalized},
            )
            self.metrics.increment_counter(
                MetricNames.REQUESTS_TOTAL,
                labels={"method": method, "path": normalized, "status": str(status_code)},
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000

            self.logger.error(
                f"Request processing error: {method} {path}",
                event_type=EventType.REQUEST_ERROR,
                method=method,
                path=path,
                job_id=job_id,
                duration_ms=duration_ms,
                metadata={
                    "request_id": request_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            self.metrics.increment_counter(
                MetricNames.REQUEST_ERRORS,
                labels={"method": method, "path": normalized, "error_type": type(e).__name__},
            )
            raise

        finally:
            clear_run_id()

    def _should_exclude_path(self, path: str) -> bool:
        """Check if path should be excluded from logging."""
        return any(path == excluded or path.startswith(excluded + "/") for excluded in self.exclude_paths)

    def _get_or_generate_request_id(self, request: Request) -> str:
        """Get request ID from header or generate new one."""
        request_id = request.headers.get("x-request-id")
        if request_id:
            return request_id

        existing_id = get_run_id()
        if existing_id:
            return existing_id

        return f"req_{uuid.uuid4().hex[:12]}"

    def _get_client_ip(self, request: Request) -> str:
        """Get client IP address from request."""
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        if request.client:
            return request.client.host

        return "unknown"

    def _extract_job_id(self, request: Request) -> Optional[str]:
        """Extract job ID from /v1/jobs/{jobId}/... paths."""
        path_parts = request.url.path.strip("/").split("/")
        if len(path_parts) >= 3 and path_parts[:2] == ["v1", "jobs"]:
            return path_parts[2]
        return None

    def _normalize_path(self, path: str) -> str:
        """Normalize path for metrics (replace ids with placeholders)."""
        path_parts = path.strip("/").split("/")

        # Segments following these collections are identifiers
        id_after = {"jobs", "automation-rules", "vendors", "designers", "services"}
        normalized_parts = []
        for i, part in enumerate(path_parts):
            if i > 0 and path_parts[i - 1] in id_after:
                normalized_parts.append("{id}")
            else:
                normalized_parts.append(part)

        return "/" + "/".join(normalized_parts) if normalized_parts else "/"


def add_logging_middleware(app, **kwargs):
    """Add logging middleware to FastAPI app."""
    app.add_middleware(LoggingMiddleware, **kwargs)
    return app
