"""Response models for the Family-Chart API."""

from src.api.models.health import DatabaseHealth, HealthResponse
from src.api.models.records import (
    AuditEventResponse,
    EntityResponse,
    HistoryResponse,
    PaginationMeta,
)

__all__ = [
    "AuditEventResponse",
    "DatabaseHealth",
    "EntityResponse",
    "HealthResponse",
    "HistoryResponse",
    "PaginationMeta",
]
