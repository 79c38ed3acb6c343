"""Request logging middleware."""
import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

logger = logging.getLogger(__name__)

SLOW_REQUEST_MS = 2000


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every HTTP request with a request id, its status and duration.
    The id is stored on ``request.state.request_id`` and echoed back in the
    ``X-Request-ID`` response header.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.request_count = 0
        self.error_count = 0

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        self.request_count += 1
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id
        start = time.perf_counter()

        logger.info(
            f"[{request_id}] {request.method} {request.url.path} - "
            f"Client: {request.client.host if request.client else 'unknown'}"
        )

        try:
            response = await call_next(request)
        except Exception as e:
            self.error_count += 1
            logger.error(f"[{request_id}] Unhandled error: {e}", exc_info=True)
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        if response.status_code >= 500:
            self.error_count += 1
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level,
            f"[{request_id}] {request.method} {request.url.path} - "
            f"Status: {response.status_code} - Duration: {duration_ms:.2f}ms",
        )
        if duration_ms > SLOW_REQUEST_MS and not request.url.path.endswith("/stream"):
            logger.warning(f"[{request_id}] SLOW REQUEST: {duration_ms:.2f}ms - {request.method} {request.url.path}")

        response.headers["X-Request-ID"] = request_id
        return response
