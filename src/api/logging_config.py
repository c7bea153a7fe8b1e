"""Logging configuration for the API and CLI.

Two output modes share one root handler:

- JSON lines (``JSON_LOGS=true``) for production log shipping, one object per
  record with the request context the middleware attaches.
- A plain text format for development, with the request id appended when
  the record carries one so a request's lines can be grepped together.

Log records from the record pipeline only carry entity types, ids, field
names and counts. Notes, symptoms and other free text are never logged.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any, Dict, Optional

logger = logging.getLogger(__name__)

# Attributes copied from LogRecord extras into the JSON payload
CONTEXT_FIELDS = ("request_id", "user_id", "entity_type", "entity_id", "client_ip")

TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"

QUIET_LOGGERS = ("uvicorn", "uvicorn.access", "fastapi", "httpx")


class StructuredFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        payload.update({
            name: getattr(record, name)
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        })
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class RequestTextFormatter(logging.Formatter):
    """Plain text formatter that appends ``[request_id]`` when present."""

    def __init__(self):
        super().__init__(TEXT_FORMAT, datefmt=TEXT_DATEFMT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        request_id = getattr(record, "request_id", None)
        return f"{line} [{request_id}]" if request_id else line


def setup_logging(use_json: bool = False, log_level: str = "INFO", stream: Optional[IO[str]] = None) -> None:
    """Install the root handler.

    Calling it again replaces the previous handler, so the CLI can raise the
    level with --verbose after the API module configured it.

    Parameters:
        use_json: Emit JSON lines instead of plain text
        log_level: Level name; unknown names fall back to INFO
        stream: Output stream (defaults to stdout)
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter() if use_json else RequestTextFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
