"""Error translation for the API.

Maps the domain error taxonomy (RecordError subclasses) and framework errors
to one JSON error shape:

    {"error": {"message", "type", "status_code", "field"?},
     "meta": {"timestamp", "path", "method"}}

Conflicts additionally carry top-level currentVersion and yourVersion so a
client can offer "someone else edited this, reload?".
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.domain.ports import BadRequestError, ConflictError, RecordError, StorageError
from src.domain.services.concurrency import to_utc

logger = logging.getLogger(__name__)


def format_stamp(value: Any) -> Optional[str]:
    """Render a version stamp as ISO-8601 UTC with a trailing Z."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc(value).isoformat().replace("+00:00", "Z")
    return str(value)


def error_response(
    request: Request,
    status_code: int,
    message: str,
    error_type: str,
    field: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    """Build the JSON error response."""
    error: Dict[str, Any] = {
        "message": message,
        "type": error_type,
        "status_code": status_code,
    }
    if field:
        error["field"] = field

    content: Dict[str, Any] = {
        "error": error,
        "meta": {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "path": request.url.path,
            "method": request.method,
        },
    }
    if extra:
        content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


async def record_error_handler(request: Request, exc: RecordError) -> JSONResponse:
    field = None
    extra = None
    if isinstance(exc, BadRequestError):
        field = exc.field
    if isinstance(exc, ConflictError):
        extra = {
            "currentVersion": format_stamp(exc.current_version),
            "yourVersion": exc.your_version,
        }

    if isinstance(exc, StorageError):
        logger.error(f"{request.method} {request.url.path} - storage failure ({exc.operation}): {str(exc)}")
        message = "Audit record could not be written" if exc.operation == "record_audit_event" \
            else "An unexpected storage error occurred"
    else:
        logger.info(f"{request.method} {request.url.path} - {type(exc).__name__}: {str(exc)}")
        message = str(exc)

    return error_response(request, exc.status_code, message, type(exc).__name__, field=field, extra=extra)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(request, exc.status_code, str(exc.detail), "HTTPException")


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path", "header")]
    field = ".".join(location) or None
    message = f"{field}: {first.get('msg', 'invalid value')}" if field else first.get("msg", "Invalid request")
    return error_response(request, 400, message, "BadRequestError", field=field)


def register_exception_handlers(app: FastAPI) -> None:
    """Register the domain and framework exception handlers on the app."""
    app.add_exception_handler(RecordError, record_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
