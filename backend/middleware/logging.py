"""Request/response logging middleware.

Logs one line per request on completion with a short correlation id that is
also returned in the ``X-Request-ID`` header. Image payloads travel in request
bodies, so bodies are never logged.
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger("api.requests")

EXCLUDED_PATHS = {
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/favicon.ico",
}

SENSITIVE_PARAMS = {"key", "api_key", "apikey", "token"}


def _describe(request: Request, request_id: str) -> str:
    parts = [f"[{request_id}]", f"{request.method} {request.url.path}"]
    if request.query_params:
        params = {
            k: ("***" if k.lower() in SENSITIVE_PARAMS else v)
            for k, v in request.query_params.items()
        }
        parts.append(f"params={params}")
    parts.append(f"client={request.client.host if request.client else 'unknown'}")
    return " ".join(parts)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration of each API request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXCLUDED_PATHS:
            return await call_next(request)

        request_id = uuid.uuid4().hex[:8]
        request_desc = _describe(request, request_id)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            logger.error(f"{request_desc} - ERROR ({duration:.3f}s): {e}")
            raise

        duration = time.perf_counter() - start_time
        status_class = response.status_code // 100
        if status_class == 5:
            log_func = logger.error
        elif status_class == 4:
            log_func = logger.warning
        elif request.method == "GET":
            log_func = logger.debug
        else:
            log_func = logger.info

        log_func(f"{request_desc} - {response.status_code} ({duration:.3f}s)")
        response.headers["X-Request-ID"] = request_id
        return response


def configure_request_logging(log_level: str = "INFO") -> None:
    """Set the request logger level and give it its own handler."""
    request_logger = logging.getLogger("api.requests")
    request_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    request_logger.propagate = False

    if not request_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        request_logger.addHandler(handler)
