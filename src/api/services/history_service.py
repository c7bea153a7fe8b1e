"""History service for the API.

Reads one page of an entity's audit trail and renders it for the timeline.
Summaries are regenerated from the stored change set on every read, so
changes to labels or filtering rules apply to old events too; the stored
summary is only a fallback for events whose changes render to nothing.
"""

import logging
import math
from typing import Optional

from src.api.models.records import AuditEventResponse, HistoryResponse, PaginationMeta
from src.domain.entities import get_definition
from src.domain.ports import NotFoundError, Result
from src.domain.services.summary_renderer import resolve_summary
from src.infrastructure.audit.audit_store import DEFAULT_PAGE_SIZE, AuditStore

logger = logging.getLogger(__name__)


class HistoryService:
    """Service for reading entity change history."""

    def __init__(self, audit_store: AuditStore, default_page_size: int = DEFAULT_PAGE_SIZE):
        """Initialize HistoryService.

        Parameters:
            audit_store: Audit store used for visibility checks and reads
            default_page_size: Page size used when the client sends no limit
        """
        self.audit_store = audit_store
        self.default_page_size = default_page_size

    def get_history(
        self,
        entity_type: str,
        entity_id: int,
        user_id: Optional[int],
        page: int = 1,
        limit: Optional[int] = None
    ) -> Result[HistoryResponse]:
        """Get a page of history for an entity, newest first.

        Parameters:
            entity_type: Entity type (visit, illness)
            entity_id: Entity identifier
            user_id: Requesting user
            page: 1-based page number
            limit: Requested page size (clamped by the audit store)

        Returns:
            Result containing HistoryResponse or error

        Raises:
            NotFoundError: If the user may not view the entity; unknown and
                           forbidden entities are indistinguishable
        """
        get_definition(entity_type)
        if not self.audit_store.can_view(entity_type, entity_id, user_id):
            raise NotFoundError(entity_type, entity_id)

        page = max(1, int(page or 1))
        page_size = self.audit_store.clamp_page_size(limit if limit is not None else self.default_page_size)

        result = self.audit_store.list(entity_type, entity_id, page=page, page_size=page_size)
        if not result.is_success():
            return Result(
                success=False,
                error=result.error,
                error_type=result.error_type,
                error_details=result.error_details
            )

        events, total = result.value
        items = [
            AuditEventResponse(
                id=event.id,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                user_id=event.user_id,
                action=event.action,
                changed_at=event.changed_at,
                changes=event.changes,
                summary=resolve_summary(event.changes, entity_type, event.action.value, event.summary),
                request_id=event.request_id,
            )
            for event in events
        ]

        total_pages = math.ceil(total / page_size) if total else 0
        pagination = PaginationMeta(
            page=page,
            limit=page_size,
            total=total,
            total_pages=total_pages,
            has_next=page * page_size < total,
            has_previous=page > 1,
        )

        logger.debug(f"History for {entity_type} {entity_id}: page {page}, {len(items)} of {total} event(s)")
        return Result.success_result(HistoryResponse(data=items, pagination=pagination))
