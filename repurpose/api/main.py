"""
FastAPI Application - Task Orchestration API.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from repurpose.auth import AuthMiddleware
from repurpose.config import get_config
from repurpose.orchestration.exceptions import OrchestrationError
from repurpose.orchestration.factory import shutdown_orchestrator

from .routes import health_router, projects_router, tasks_router, batches_router, webhooks_router
from .exceptions import (
    APIError,
    api_error_handler,
    generic_exception_handler,
    orchestration_error_handler,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan handler."""
    logger.info("=" * 60)
    logger.info("Starting Repurpose Orchestration API...")
    logger.info("=" * 60)

    config = get_config()
    config.log_status()

    if config.uses_celery:
        try:
            from .dependencies import check_redis_connection, check_celery_connection
            logger.info(f"Redis connected: {check_redis_connection()}")
            logger.info(f"Celery connected: {check_celery_connection()}")
        except Exception as e:
            logger.warning(f"Redis/Celery check skipped: {e}")
    else:
        logger.info("Task queue: inline (submissions run as background tasks)")

    yield

    logger.info("Shutting down Repurpose Orchestration API...")
    await shutdown_orchestrator()


def create_app(
    debug: bool = False,
    require_auth: bool = True,
) -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Repurpose Orchestration API",
        description="Asynchronous task orchestration for video repurposing providers",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
        debug=debug,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(AuthMiddleware, require_auth=require_auth)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(OrchestrationError, orchestration_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(health_router)
    app.include_router(projects_router)
    app.include_router(tasks_router)
    app.include_router(batches_router)
    app.include_router(webhooks_router)

    return app


app = create_app(debug=get_config().debug, require_auth=True)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "repurpose.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
