"""Middleware configuration for the API.

This module sets up middleware for request logging (with request ids that
are threaded into audit events) and last-resort error handling.
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.api.errors import error_response

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging and request ids."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Log request and response details.

        A client-supplied X-Request-ID is reused (truncated); otherwise one is
        generated. It is exposed as request.state.request_id and echoed back.

        Parameters:
            request: Incoming HTTP request
            call_next: Next middleware or route handler

        Returns:
            Response: HTTP response with X-Process-Time and X-Request-ID headers
        """
        start_time = time.time()
        request_id = (request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4()))[:MAX_REQUEST_ID_LENGTH]
        request.state.request_id = request_id

        logger.info(
            f"{request.method} {request.url.path} - "
            f"Client: {request.client.host if request.client else 'unknown'}",
            extra={"request_id": request_id}
        )

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                f"{request.method} {request.url.path} - "
                f"Error: {str(e)} - "
                f"Time: {process_time:.3f}s",
                exc_info=True,
                extra={"request_id": request_id}
            )
            response = error_response(request, 500, "An unexpected error occurred", "InternalServerError")
            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = f"{process_time:.3f}"
        response.headers[REQUEST_ID_HEADER] = request_id

        logger.info(
            f"{request.method} {request.url.path} - "
            f"Status: {response.status_code} - "
            f"Time: {process_time:.3f}s",
            extra={"request_id": request_id}
        )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Middleware for global error handling of anything the exception handlers missed."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Unexpected error: {str(e)}", exc_info=True)
            return error_response(
                request,
                500,
                "An unexpected error occurred. Please check logs for details.",
                "InternalServerError"
            )


def setup_middleware(app) -> None:
    """Setup application middleware.

    Parameters:
        app: FastAPI application instance

    Middleware Order (important):
        1. ErrorHandlingMiddleware - Handles errors
        2. LoggingMiddleware - Logs requests/responses (outermost, assigns request ids)
    """
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(LoggingMiddleware)
