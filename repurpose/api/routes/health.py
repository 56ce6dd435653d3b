"""
Health check endpoints.
"""
from fastapi import APIRouter, Depends, status

from repurpose.orchestration.factory import Orchestrator, get_orchestrator

from ..schemas import HealthResponse
from ..dependencies import check_celery_connection, check_redis_connection, check_database

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health Check",
    description="Check API and dependent services health status.",
)
async def health_check(orchestrator: Orchestrator = Depends(get_orchestrator)) -> HealthResponse:
    """
    Health check endpoint.
    Celery and Redis are only checked when the Celery task queue is in use.
    """
    database_ok = check_database(orchestrator)
    celery_ok = None
    redis_ok = None
    healthy = database_ok

    if orchestrator.config.uses_celery:
        celery_ok = check_celery_connection()
        redis_ok = check_redis_connection()
        healthy = healthy and celery_ok and redis_ok

    return HealthResponse(
        status="healthy" if healthy else "degraded",
        database_ok=database_ok,
        task_queue=orchestrator.config.task_queue,
        celery_connected=celery_ok,
        redis_connected=redis_ok,
    )


@router.get(
    "/health/live",
    status_code=status.HTTP_200_OK,
    summary="Liveness Probe",
    description="Kubernetes liveness probe endpoint.",
)
async def liveness() -> dict:
    """Liveness probe - always returns OK if app is running."""
    return {"status": "alive"}


@router.get(
    "/health/ready",
    status_code=status.HTTP_200_OK,
    summary="Readiness Probe",
    description="Kubernetes readiness probe endpoint.",
)
async def readiness(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    """Readiness probe - checks if app can handle requests."""
    if not check_database(orchestrator):
        return {"status": "not_ready", "reason": "Database unavailable"}

    if orchestrator.config.uses_celery and not check_redis_connection():
        return {"status": "not_ready", "reason": "Redis unavailable"}

    return {"status": "ready"}


@router.get(
    "/health/config",
    status_code=status.HTTP_200_OK,
    summary="Configuration Status",
    description="Check provider configuration status (does not expose actual keys).",
)
async def config_status(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    """
    Configuration status endpoint.
    Returns which providers are configured without exposing keys.
    """
    report = orchestrator.config.validate()
    providers = report["providers"]

    return {
        "status": "configured" if all(providers.values()) else "partial",
        "providers": {
            "vizard": "configured" if providers["vizard_configured"] else "missing",
            "fal": "configured" if providers["fal_configured"] else "missing",
            "kie": "configured" if providers["kie_configured"] else "missing",
        },
        "capabilities": {
            "clips": providers["vizard_configured"],
            "transcription": providers["fal_configured"],
            "persona-training": providers["fal_configured"],
            "thumbnail-batch": providers["kie_configured"],
        },
        "webhooks": report["webhooks"],
        "task_queue": report["task_queue"],
    }
