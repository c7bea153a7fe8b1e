"""Audit Store.

This module persists field-level audit events for mutable health records and
reads them back, newest first, for the history timeline.

Security Impact:
    - Creates an immutable, append-only audit trail of every create, update
      and delete
    - Long string values are truncated before persistence to bound storage
    - History visibility is delegated to the family access-control adapter;
      this module never interprets family membership itself

Architecture:
    - Infrastructure layer component sitting on AuditStoragePort
    - Called by the Update Orchestrator after a committed entity write
    - record() raises AuditWriteError; the orchestrator decides (by policy)
      whether that fails the request
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.domain.audit_models import AuditAction, AuditEvent, ChangeSet, to_jsonable
from src.domain.ports import (
    AccessControlPort,
    AuditStoragePort,
    AuditWriteError,
    Result,
)
from src.domain.services.concurrency import utc_now
from src.domain.services.summary_renderer import summarize

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGE_SIZE = 200
DEFAULT_PAGE_SIZE = 50
DEFAULT_MAX_VALUE_LENGTH = 1000


def truncate_value(value: Any, max_length: int) -> Any:
    """Truncate a string longer than max_length, appending "..."."""
    if isinstance(value, str) and len(value) > max_length:
        return value[:max_length] + '...'
    return value


def sanitize_changes(changes: ChangeSet, max_length: int) -> Dict[str, Dict[str, Any]]:
    """Convert a change set to JSON-safe values and truncate long strings."""
    sanitized = {}
    for field, change in changes.items():
        before = change.get('before') if isinstance(change, dict) else None
        after = change.get('after') if isinstance(change, dict) else None
        sanitized[field] = {
            'before': truncate_value(to_jsonable(before), max_length),
            'after': truncate_value(to_jsonable(after), max_length),
        }
    return sanitized


class AuditStore:
    """Append-only store of audit events with paginated history reads.

    Parameters:
        storage: Audit storage adapter
        access_control: Family/ownership authorization collaborator
        max_page_size: Upper bound applied to every history page size
        max_value_length: Strings longer than this are truncated before persistence
        clock: Source of changed_at stamps (naive UTC)

    Example Usage:
        ```python
        store = AuditStore(adapter, adapter)
        store.record("visit", 42, user_id=7, action=AuditAction.UPDATED,
                     changes={"temperature": {"before": 101.5, "after": 99.0}})
        result = store.list("visit", 42, page=1, page_size=50)
        ```
    """

    def __init__(
        self,
        storage: AuditStoragePort,
        access_control: AccessControlPort,
        max_page_size: int = DEFAULT_MAX_PAGE_SIZE,
        max_value_length: int = DEFAULT_MAX_VALUE_LENGTH,
        clock: Callable = utc_now
    ):
        self.storage = storage
        self.access_control = access_control
        self.max_page_size = max_page_size
        self.max_value_length = max_value_length
        self._clock = clock

    def record(
        self,
        entity_type: str,
        entity_id: int,
        user_id: Optional[int],
        action: AuditAction,
        changes: ChangeSet,
        summary: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> int:
        """Persist one audit event.

        Parameters:
            entity_type: Entity type (visit, illness)
            entity_id: Entity identifier
            user_id: Acting user, or None for system actions
            action: created, updated or deleted
            changes: Change set (may be empty for created/deleted)
            summary: Stored summary; rendered from changes when omitted
            request_id: Originating request identifier

        Returns:
            Identifier of the persisted event

        Raises:
            AuditWriteError: If the event could not be persisted
        """
        action = AuditAction(action)
        stored_summary = summary if summary is not None else summarize(changes, entity_type)
        row = {
            'entity_type': entity_type,
            'entity_id': entity_id,
            'user_id': user_id,
            'action': action.value,
            'changes': sanitize_changes(changes, self.max_value_length),
            'summary': stored_summary,
            'request_id': request_id,
            'changed_at': self._clock(),
        }

        try:
            event_id = self.storage.append_audit_event(row)
        except Exception as e:
            logger.error(
                f"Failed to record {action.value} audit event for {entity_type} {entity_id}: {str(e)}",
                exc_info=True
            )
            raise AuditWriteError(
                "Audit record could not be written",
                operation="record_audit_event",
                details={"entity_type": entity_type, "entity_id": entity_id}
            ) from e

        logger.debug(
            f"Recorded audit event {event_id}: {entity_type}.{entity_id} "
            f"({action.value}, {len(changes)} field(s))"
        )
        return event_id

    def clamp_page_size(self, page_size: Optional[int]) -> int:
        """Clamp a requested page size to [1, max_page_size]."""
        if page_size is None:
            return min(DEFAULT_PAGE_SIZE, self.max_page_size)
        return max(1, min(int(page_size), self.max_page_size))

    def list(
        self,
        entity_type: str,
        entity_id: int,
        page: int = 1,
        page_size: Optional[int] = DEFAULT_PAGE_SIZE
    ) -> Result[Tuple[List[AuditEvent], int]]:
        """Read one page of audit events, newest first.

        Parameters:
            entity_type: Entity type
            entity_id: Entity identifier
            page: 1-based page number
            page_size: Requested page size (clamped to max_page_size)

        Returns:
            Result with (events, total_count)
        """
        page = max(1, int(page or 1))
        limit = self.clamp_page_size(page_size)
        offset = (page - 1) * limit

        try:
            rows, total = self.storage.list_audit_events(entity_type, entity_id, limit, offset)
            events = [AuditEvent.from_row(row) for row in rows]
            return Result.success_result((events, total))
        except Exception as e:
            error_msg = f"Failed to list audit events for {entity_type} {entity_id}: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(e, error_type="StorageError")

    def can_view(self, entity_type: str, entity_id: int, user_id: Optional[int]) -> bool:
        """Check whether the user may view the entity's history."""
        if not user_id:
            return False
        return self.access_control.can_read(user_id, entity_type, entity_id)
