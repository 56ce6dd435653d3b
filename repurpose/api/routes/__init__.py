"""
API Routes.
"""
from .health import router as health_router
from .projects import router as projects_router
from .tasks import router as tasks_router
from .batches import router as batches_router
from .webhooks import router as webhooks_router

__all__ = [
    "health_router",
    "projects_router",
    "tasks_router",
    "batches_router",
    "webhooks_router",
]
