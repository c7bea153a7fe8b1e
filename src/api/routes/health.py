"""Health check endpoint.

Always answers 200; a database that cannot be reached turns the status to
"unhealthy" so load balancers can tell a dead backend from a dead process.
"""

import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter

from src.api.dependencies import StorageAdapter, StorageDep
from src.api.models.health import DatabaseHealth, HealthResponse
from src.infrastructure.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


def check_database_health(storage: StorageAdapter) -> DatabaseHealth:
    """Query the storage adapter and time the round trip."""
    db_type = getattr(storage, "db_type", "unknown")
    started = time.perf_counter()
    result = storage.health_check()
    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

    if not result.is_success():
        logger.warning(f"{db_type} health check failed: {result.error}")
        return DatabaseHealth(status="disconnected", type=db_type)
    return DatabaseHealth(status="connected", type=db_type, response_time_ms=elapsed_ms)


@router.get("/health", response_model=HealthResponse)
def health_check(storage: StorageDep) -> HealthResponse:
    database = check_database_health(storage)
    return HealthResponse(
        status="healthy" if database.status == "connected" else "unhealthy",
        timestamp=datetime.now(timezone.utc),
        version=settings.app_version,
        audit_failure_policy=settings.audit_config.failure_policy.value,
        database=database
    )
