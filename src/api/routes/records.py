"""Visit and illness endpoints.

Both entity types share one pipeline, so the routes are built by a small
factory: each router exposes create, get, partial update, delete and the
paginated history of one entity type. Handlers are plain functions because
the storage adapters are synchronous; FastAPI runs them in its threadpool.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, HTTPException, Query, Response

from src.api.dependencies import HistoryServiceDep, OrchestratorDep, RequestIdDep, UserIdDep
from src.api.models.records import EntityResponse, HistoryResponse
from src.domain.audit_models import to_jsonable

logger = logging.getLogger(__name__)


def build_entity_router(entity_type: str, collection: str) -> APIRouter:
    """Build the router for one entity type.

    Parameters:
        entity_type: Entity type handled by the orchestrator (visit, illness)
        collection: URL segment (visits, illnesses)

    Returns:
        APIRouter mounted under /api/<collection>
    """
    router = APIRouter(prefix=f"/api/{collection}", tags=[collection])

    @router.post("", response_model=EntityResponse, status_code=201)
    def create_entity(
        orchestrator: OrchestratorDep,
        user_id: UserIdDep,
        request_id: RequestIdDep,
        body: Dict[str, Any] = Body(...)
    ) -> EntityResponse:
        """Create a record for a child and return it."""
        outcome = orchestrator.create(entity_type, user_id, body, request_id=request_id)
        return EntityResponse(data=to_jsonable(outcome.entity))

    @router.get("/{entity_id}", response_model=EntityResponse)
    def get_entity(entity_id: int, orchestrator: OrchestratorDep, user_id: UserIdDep) -> EntityResponse:
        """Get a record with its sub-record collection."""
        entity = orchestrator.get(entity_type, entity_id, user_id)
        return EntityResponse(data=to_jsonable(entity))

    @router.put("/{entity_id}", response_model=EntityResponse)
    def update_entity(
        entity_id: int,
        orchestrator: OrchestratorDep,
        user_id: UserIdDep,
        request_id: RequestIdDep,
        body: Dict[str, Any] = Body(...)
    ) -> EntityResponse:
        """Apply a partial update.

        Only keys present in the body are written. An optional updated_at
        carries the version stamp the client last read; when it is stale
        the response is 409 with currentVersion and yourVersion.
        """
        outcome = orchestrator.update(entity_type, entity_id, user_id, body, request_id=request_id)
        return EntityResponse(data=to_jsonable(outcome.entity))

    @router.delete("/{entity_id}", status_code=204)
    def delete_entity(
        entity_id: int,
        orchestrator: OrchestratorDep,
        user_id: UserIdDep,
        request_id: RequestIdDep
    ) -> Response:
        """Delete a record. Its audit events are retained."""
        orchestrator.delete(entity_type, entity_id, user_id, request_id=request_id)
        return Response(status_code=204)

    @router.get("/{entity_id}/history", response_model=HistoryResponse)
    def get_entity_history(
        entity_id: int,
        history_service: HistoryServiceDep,
        user_id: UserIdDep,
        page: int = Query(1, ge=1, description="Page number (1-based)"),
        limit: Optional[int] = Query(None, ge=1, description="Page size (clamped to the configured maximum)")
    ) -> HistoryResponse:
        """Get the change history of a record, newest first.

        Summaries are regenerated from the stored changes on every read.
        """
        result = history_service.get_history(entity_type, entity_id, user_id, page=page, limit=limit)
        if result.is_success():
            return result.value
        logger.error(f"History read failed for {entity_type} {entity_id}: {result.error}")
        raise HTTPException(status_code=500, detail="Failed to load history")

    return router


visits_router = build_entity_router("visit", "visits")
illnesses_router = build_entity_router("illness", "illnesses")
