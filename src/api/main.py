"""FastAPI application for the Family-Chart records API.

``create_app`` assembles the app: CORS, request-id/logging middleware, the
domain error handlers, the health router and one router per audited entity
type. ``app`` is the instance uvicorn serves (``src.api.main:app``).
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.errors import register_exception_handlers
from src.api.logging_config import setup_logging
from src.api.middleware import REQUEST_ID_HEADER, setup_middleware
from src.api.routes import health, records
from src.infrastructure.settings import settings

setup_logging(use_json=settings.json_logs, log_level=settings.log_level)

logger = logging.getLogger(__name__)

ENTITY_ROUTERS = (records.visits_router, records.illnesses_router)


@asynccontextmanager
async def lifespan(app: FastAPI):
    audit_config = settings.audit_config
    logger.info(
        f"{settings.app_name} {settings.app_version} starting "
        f"(database: {settings.db_config.db_type}, audit policy: {audit_config.failure_policy.value}, "
        f"version tolerance: {audit_config.version_tolerance_ms}ms)"
    )
    yield
    logger.info(f"{settings.app_name} stopped")


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    application = FastAPI(
        title=f"{settings.app_name} API",
        description="Visit and illness records with field-level change history and optimistic locking",
        version=settings.app_version,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
        expose_headers=["X-Process-Time", REQUEST_ID_HEADER],
    )
    setup_middleware(application)
    register_exception_handlers(application)

    application.include_router(health.router)
    for router in ENTITY_ROUTERS:
        application.include_router(router)

    @application.get("/", include_in_schema=False)
    def root():
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/api/docs",
            "collections": [router.prefix for router in ENTITY_ROUTERS],
        }

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("src.api.main:app", host="127.0.0.1", port=8000, reload=True)
