"""
Custom FastAPI middleware for request tracing and logging.
"""
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from ..core.logging_config import get_logger

logger = get_logger("billing_core.api.access")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add unique request ID to each request.
    """
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for logging of requests and responses.
    """
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        request_id = getattr(request.state, "request_id", "unknown")

        response = await call_next(request)

        duration_ms = (time.time() - start_time) * 1000
        # Webhook bodies and tokens are never logged
        message = (
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"in {duration_ms:.1f}ms [request_id={request_id}]"
        )
        if response.status_code >= 500:
            logger.error(message)
        elif response.status_code >= 400:
            logger.warning(message)
        else:
            logger.info(message)
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"
        return response
