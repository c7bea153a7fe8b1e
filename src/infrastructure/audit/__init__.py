"""Audit infrastructure components.

This package provides the append-only audit store used to record and
page through field-level change events of health records.
"""

from src.infrastructure.audit.audit_store import AuditStore

__all__ = ['AuditStore']
