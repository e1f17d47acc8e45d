"""Middleware for handling correlation IDs in FastAPI requests."""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from utils import clear_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

QUIET_PREFIXES = ("/health", "/metrics")


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Tag every request, and everything it logs, with a correlation ID."""

    def __init__(self, app, correlation_header: str = "X-Correlation-ID"):
        super().__init__(app)
        self.correlation_header = correlation_header

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(self.correlation_header) or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id

        path = request.url.path
        # probes poll constantly
        log = logger.debug if path.startswith(QUIET_PREFIXES) else logger.info
        log(
            f"HTTP request received: {request.method} {path}",
            serviceName="CorrelationMiddleware",
            operationName="handleRequest",
            method=request.method,
            path=path,
            client_ip=request.client.host if request.client else None,
        )

        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.correlation_header] = correlation_id
            log(
                f"HTTP request completed: {request.method} {path}",
                serviceName="CorrelationMiddleware",
                operationName="handleRequest",
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
                success=200 <= response.status_code < 400,
            )
            return response
        finally:
            clear_correlation_id()
