"""Request/Response logging middleware for development and debugging.

Logs one line per request with a short request id, method, path, client and
duration. Credentials never reach the log: cookie and Authorization values
are not logged at all, only whether they were present, and sensitive query
parameters are masked.

IMPORTANT: This middleware should only be enabled in development mode.
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger("api.requests")

# Paths to exclude from logging (noisy endpoints)
EXCLUDED_PATHS = {
    "/health",
    "/",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/favicon.ico",
}

SENSITIVE_PARAMS = frozenset(
    {"token", "access_token", "refresh_token", "password", "key", "secret"}
)

REQUEST_ID_HEADER = "X-Request-ID"


def _credential_summary(request: Request) -> str:
    present = []
    if request.headers.get("authorization", "").lower().startswith("bearer "):
        present.append("bearer")
    if request.cookies:
        present.append("cookie")
    return "+".join(present) or "none"


def _sanitize_params(params: dict) -> dict:
    return {k: ("***" if k.lower() in SENSITIVE_PARAMS else v) for k, v in params.items()}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that logs HTTP requests and responses.

    The request id is echoed in the ``X-Request-ID`` response header.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXCLUDED_PATHS:
            return await call_next(request)

        request_id = str(uuid.uuid4())[:8]
        start_time = time.time()

        method = request.method
        log_parts = [f"[{request_id}]", f"{method} {request.url.path}"]

        query_params = dict(request.query_params)
        if query_params:
            log_parts.append(f"params={_sanitize_params(query_params)}")

        log_parts.append(f"client={request.client.host if request.client else 'unknown'}")
        log_parts.append(f"credentials={_credential_summary(request)}")
        request_desc = " ".join(log_parts)

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            logger.error(f"{request_desc} - ERROR ({duration:.3f}s): {e}")
            raise

        duration = time.time() - start_time
        status_code = response.status_code
        status_class = status_code // 100

        if status_class == 5:
            log_func = logger.error
        elif status_class == 4:
            log_func = logger.warning
        elif method == "GET":
            log_func = logger.debug
        else:
            log_func = logger.info

        log_func(f"{request_desc} - {status_code} ({duration:.3f}s)")

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def configure_request_logging(log_level: str = "INFO") -> None:
    """
    Configure the request logger.

    Call this function during application startup.
    """
    request_logger = logging.getLogger("api.requests")
    request_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    # Prevent duplicate emission via root logger handlers.
    request_logger.propagate = False

    if not request_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            )
        )
        request_logger.addHandler(handler)
