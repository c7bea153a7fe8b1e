"""Record and history response models."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.domain.audit_models import AuditAction


class EntityResponse(BaseModel):
    """Envelope for a single visit or illness."""

    data: Dict[str, Any] = Field(..., description="Entity fields, including sub-record collections")


class AuditEventResponse(BaseModel):
    """One audit event as shown on the history timeline."""

    id: int = Field(..., description="Audit event identifier")
    entity_type: str = Field(..., description="Entity type (visit, illness)")
    entity_id: int = Field(..., description="Entity identifier")
    user_id: Optional[int] = Field(None, description="Acting user")
    action: AuditAction = Field(..., description="created, updated or deleted")
    changed_at: datetime = Field(..., description="When the change occurred (UTC)")
    changes: Dict[str, Any] = Field(default_factory=dict, description="Field-level before/after values as stored")
    summary: str = Field(..., description="Summary rendered with the current rules")
    request_id: Optional[str] = Field(None, description="Originating request identifier")


class PaginationMeta(BaseModel):
    """Pagination metadata."""

    page: int = Field(..., description="Current page (1-based)")
    limit: int = Field(..., description="Number of records per page (after clamping)")
    total: int = Field(..., description="Total number of records")
    total_pages: int = Field(..., description="Total number of pages")
    has_next: bool = Field(..., description="Whether there are more records")
    has_previous: bool = Field(..., description="Whether there are previous records")


class HistoryResponse(BaseModel):
    """Response model for an entity's change history."""

    data: List[AuditEventResponse] = Field(..., description="Audit events, newest first")
    pagination: PaginationMeta = Field(..., description="Pagination metadata")
