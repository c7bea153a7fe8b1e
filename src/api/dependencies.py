"""Dependency injection for the API.

This module provides dependency injection functions for FastAPI,
following Hexagonal Architecture principles: routes receive the storage
adapter, audit store, orchestrator and history service through Depends and
never construct infrastructure themselves.
"""

import logging
from functools import lru_cache
from typing import Annotated, Optional, Union

from fastapi import Depends, Header, HTTPException, Request

from src.adapters.storage import DuckDBAdapter, PostgreSQLAdapter
from src.api.services.history_service import HistoryService
from src.domain.services.update_orchestrator import UpdateOrchestrator
from src.infrastructure.audit.audit_store import AuditStore
from src.infrastructure.config_manager import AuditFailurePolicy
from src.infrastructure.settings import settings

logger = logging.getLogger(__name__)

StorageAdapter = Union[DuckDBAdapter, PostgreSQLAdapter]


@lru_cache()
def get_storage_adapter() -> StorageAdapter:
    """Get storage adapter instance (cached).

    Retrieves the configured storage adapter (DuckDB or PostgreSQL) and
    makes sure the schema exists. The result is cached so the adapter (and
    its connection or pool) is shared by all requests.

    Returns:
        Configured storage adapter instance

    Raises:
        ValueError: If database type is unsupported
    """
    db_config = settings.db_config

    if db_config.db_type == "duckdb":
        logger.debug(f"Creating DuckDB adapter with path: {db_config.db_path or ':memory:'}")
        adapter = DuckDBAdapter(db_config=db_config)
    elif db_config.db_type == "postgresql":
        logger.debug(f"Creating PostgreSQL adapter with host: {db_config.host}")
        adapter = PostgreSQLAdapter(db_config=db_config)
    else:
        raise ValueError(f"Unsupported database type: {db_config.db_type}")

    result = adapter.initialize_schema()
    if not result.is_success():
        logger.error(f"Schema initialization failed: {result.error}")
    return adapter


def get_audit_store(storage: Annotated[StorageAdapter, Depends(get_storage_adapter)]) -> AuditStore:
    audit_config = settings.audit_config
    return AuditStore(
        storage,
        storage,
        max_page_size=audit_config.history_max_page_size,
        max_value_length=audit_config.max_change_value_length,
    )


def get_orchestrator(
    storage: Annotated[StorageAdapter, Depends(get_storage_adapter)],
    audit_store: Annotated[AuditStore, Depends(get_audit_store)]
) -> UpdateOrchestrator:
    audit_config = settings.audit_config
    return UpdateOrchestrator(
        storage,
        storage,
        audit_store,
        version_tolerance_ms=audit_config.version_tolerance_ms,
        fail_closed=audit_config.failure_policy == AuditFailurePolicy.FAIL_CLOSED,
    )


def get_history_service(audit_store: Annotated[AuditStore, Depends(get_audit_store)]) -> HistoryService:
    return HistoryService(audit_store, default_page_size=settings.audit_config.history_default_page_size)


def get_current_user_id(x_user_id: Annotated[Optional[str], Header()] = None) -> int:
    """Read the acting user's id from the X-User-Id header.

    Authentication happens upstream; this service trusts the header.

    Raises:
        HTTPException: 401 if the header is missing or not a positive integer
    """
    if x_user_id is None or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        user_id = int(x_user_id.strip())
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid user id")
    if user_id <= 0:
        raise HTTPException(status_code=401, detail="Invalid user id")
    return user_id


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


# Type aliases for dependency injection
StorageDep = Annotated[StorageAdapter, Depends(get_storage_adapter)]
OrchestratorDep = Annotated[UpdateOrchestrator, Depends(get_orchestrator)]
HistoryServiceDep = Annotated[HistoryService, Depends(get_history_service)]
UserIdDep = Annotated[int, Depends(get_current_user_id)]
RequestIdDep = Annotated[Optional[str], Depends(get_request_id)]
