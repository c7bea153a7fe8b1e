"""Health check models."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class DatabaseHealth(BaseModel):
    """Connectivity of the configured storage backend."""

    status: Literal["connected", "disconnected"]
    type: str = Field(..., description="duckdb or postgresql")
    response_time_ms: Optional[float] = Field(None, description="Round trip of the health check query")


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"]
    timestamp: datetime = Field(..., description="Current UTC timestamp")
    version: str = Field(..., description="Application version")
    audit_failure_policy: str = Field(..., description="fail_open or fail_closed")
    database: DatabaseHealth
