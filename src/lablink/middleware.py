"""
Request logging middleware for the allocator HTTP adapter.

Every request outside ``exclude_paths`` gets a request id (taken from the
``X-Request-ID`` header when the caller sends one), start and end log
entries, and duration and count metrics labelled with a normalized path.
"""

import uuid
from typing import Callable, Dict, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .logging import EventType, RequestTimer, clear_request_id, get_logger, set_request_id
from .metrics import MetricNames, get_metrics

REQUEST_ID_HEADER = "X-Request-ID"
DEFAULT_EXCLUDED_PATHS = ("/health", "/v1/metrics", "/favicon.ico")


class LoggingMiddleware(BaseHTTPMiddleware):
    """Structured request logging and request metrics."""

    def __init__(
        self,
        app: ASGIApp,
        logger_name: str = "lablink.middleware",
        exclude_paths: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.logger = get_logger(logger_name)
        self.metrics = get_metrics()
        self.exclude_paths = tuple(exclude_paths or DEFAULT_EXCLUDED_PATHS)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if self._is_excluded(path):
            return await call_next(request)

        request_id = request.headers.get(REQUEST_ID_HEADER) or f"req_{uuid.uuid4().hex[:12]}"
        set_request_id(request_id)
        labels = {"method": request.method, "path": self._normalize_path(path)}
        timer = RequestTimer(
            self.logger,
            request.method,
            path,
            metadata={
                "request_id": request_id,
                "client_ip": self._client_ip(request),
                "query_params": str(request.query_params) or None,
            },
        )

        try:
            with timer:
                response = await call_next(request)
                timer.set_status_code(response.status_code)
        except Exception as e:
            self.logger.error(
                f"Unhandled error in {request.method} {path}: {e}",
                event_type=EventType.ALLOCATOR_ERROR,
                method=request.method,
                path=path,
                duration_ms=timer.duration_ms,
                metadata={"request_id": request_id, "error_type": type(e).__name__},
            )
            self.metrics.increment_counter(
                MetricNames.REQUEST_ERRORS, labels={**labels, "error_type": type(e).__name__}
            )
            raise
        else:
            self._record(labels, response.status_code, timer.duration_ms)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            clear_request_id()

    def _record(self, labels: Dict[str, str], status_code: int, duration_ms: float) -> None:
        self.metrics.record_timer(MetricNames.REQUEST_DURATION, duration_ms, labels=labels)
        self.metrics.increment_counter(
            MetricNames.REQUESTS_TOTAL, labels={**labels, "status": str(status_code)}
        )

    def _is_excluded(self, path: str) -> bool:
        return any(path == p or path.startswith(p + "/") for p in self.exclude_paths)

    @staticmethod
    def _client_ip(request: Request) -> str:
        # First hop of X-Forwarded-For when running behind a proxy
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    @staticmethod
    def _normalize_path(path: str) -> str:
        """Collapse instance ids and similar identifiers so metric labels stay bounded."""
        segments = [
            "{id}" if s.startswith("i-") or (len(s) > 16 and "-" in s) else s
            for s in path.strip("/").split("/")
        ]
        return "/" + "/".join(segments)


def add_logging_middleware(app, **kwargs):
    """Install LoggingMiddleware on a FastAPI app."""
    app.add_middleware(LoggingMiddleware, **kwargs)
    return app
