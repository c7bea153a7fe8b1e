"""Domain layer for Family-Chart.

This module contains the core business logic for audited, concurrently
edited health records: audit models, entity definitions and ports.
All domain models are pure Python with no external dependencies beyond Pydantic.
"""

from .audit_models import (
    AuditAction,
    AuditEvent,
    ChangeSet,
    UpdateOutcome,
    VersionCheckOutcome,
)

__all__ = [
    "AuditAction",
    "AuditEvent",
    "ChangeSet",
    "UpdateOutcome",
    "VersionCheckOutcome",
]
