"""Audit Trail Models.

This module defines models for tracking field-level changes to mutable
family health records (visits, illnesses). These models are used for the
audit trail, history rendering and optimistic concurrency outcomes.

Security Impact:
    - Change sets may contain clinical free text (notes, symptoms)
    - Audit events are immutable once created (append-only)
    - Summaries never embed free-text values, only field labels

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Models are validated before use
    - Follows Hexagonal Architecture: Domain Core is isolated from Adapters
"""

import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

# Stored shape: one entry per changed field, {"before": ..., "after": ...}
ChangeSet = Dict[str, Dict[str, Any]]


class AuditAction(str, Enum):
    """Lifecycle action recorded by an audit event."""
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class VersionCheckOutcome(str, Enum):
    """Outcome of comparing a client version stamp with the server stamp."""
    NO_CHECK_REQUESTED = "no_check_requested"
    OK = "ok"
    CONFLICT = "conflict"


class AuditEvent(BaseModel):
    """Immutable record of one create/update/delete action on an entity.

    Parameters:
        id: Monotonic identifier assigned by storage
        entity_type: Entity type (visit, illness)
        entity_id: Identifier of the entity instance
        user_id: Acting user (None for system actions)
        action: created, updated or deleted
        changes: Change set (possibly empty)
        changed_at: When the event occurred
        summary: Stored summary (a cache; regenerated on read)
        request_id: Request that produced the event (optional)
    """

    id: int = Field(..., description="Monotonic audit event identifier")
    entity_type: str = Field(..., description="Entity type")
    entity_id: int = Field(..., description="Entity identifier")
    user_id: Optional[int] = Field(None, description="Acting user (None for system actions)")
    action: AuditAction = Field(..., description="created, updated or deleted")
    # Stored blobs may predate the current shape (e.g. legacy "_legacy" entries)
    changes: Dict[str, Any] = Field(default_factory=dict, description="Field-level before/after values")
    changed_at: datetime = Field(..., description="When the change occurred")
    summary: Optional[str] = Field(None, description="Stored summary (advisory only)")
    request_id: Optional[str] = Field(None, description="Originating request identifier")

    model_config = {
        'frozen': True,
    }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'AuditEvent':
        """Build an event from a storage row.

        The changes column may come back as a JSON string (DuckDB) or an
        already-decoded mapping (PostgreSQL JSONB); anything unreadable is
        treated as an empty change set rather than failing the history read.
        """
        changes = row.get('changes')
        if isinstance(changes, (str, bytes)):
            try:
                changes = json.loads(changes)
            except (TypeError, ValueError):
                changes = {}
        if not isinstance(changes, dict):
            changes = {}

        return cls(
            id=int(row['id']),
            entity_type=row['entity_type'],
            entity_id=int(row['entity_id']),
            user_id=row.get('user_id'),
            action=row['action'],
            changes=changes,
            changed_at=row['changed_at'],
            summary=row.get('summary'),
            request_id=str(row['request_id']) if row.get('request_id') else None,
        )


class UpdateOutcome(BaseModel):
    """Result of a successful update through the orchestrator.

    Parameters:
        entity: The freshly written entity merged with its sub-records
        changes: Change set that was computed for the audit trail
        audit_recorded: Whether an audit event was persisted
    """

    entity: Dict[str, Any] = Field(..., description="Updated entity")
    changes: ChangeSet = Field(default_factory=dict, description="Computed change set")
    audit_recorded: bool = Field(False, description="Whether an audit event was persisted")


def to_jsonable(value: Any) -> Any:
    """Convert storage values (dates, decimals, nested containers) to JSON-safe values.

    Parameters:
        value: Value read from storage or produced by a validator

    Returns:
        Equivalent value built from str/int/float/bool/None/list/dict
    """
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return str(value)
