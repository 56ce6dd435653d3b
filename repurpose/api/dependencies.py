"""
Shared dependencies for API routes.
"""
import logging

from fastapi import BackgroundTasks

from repurpose.orchestration.factory import Orchestrator
from repurpose.orchestration.models import TaskType

logger = logging.getLogger(__name__)


def get_celery_app():
    """Get Celery app instance."""
    from repurpose.celery_app import celery_app
    return celery_app


def check_celery_connection() -> bool:
    """Check if Celery workers are reachable."""
    try:
        inspect = get_celery_app().control.inspect()
        stats = inspect.stats()
        return stats is not None
    except Exception as e:
        logger.warning(f"Celery connection check failed: {e}")
        return False


def check_redis_connection() -> bool:
    """Check if Redis is accessible."""
    try:
        get_celery_app().backend.client.ping()
        return True
    except Exception as e:
        logger.warning(f"Redis connection check failed: {e}")
        return False


def check_database(orchestrator: Orchestrator) -> bool:
    """Check if the SQLite database answers."""
    try:
        orchestrator.db.fetchone("SELECT 1")
        return True
    except Exception as e:
        logger.warning(f"Database check failed: {e}")
        return False


def schedule_submission(
    orchestrator: Orchestrator,
    background_tasks: BackgroundTasks,
    project_id: str,
    task_type: TaskType,
) -> None:
    """
    Hand the asynchronous half of a start to the configured queue.

    If enqueueing fails the task stays accepted; the reconcile sweep
    re-submits it once it has been quiet for the grace window.
    """
    if not orchestrator.config.uses_celery:
        background_tasks.add_task(orchestrator.submit, project_id, task_type)
        return

    from repurpose.orchestration.tasks import submit_batch_items, submit_task

    try:
        if task_type.is_batch:
            task = orchestrator.store.get(project_id, task_type)
            submit_batch_items.delay(task.batch_id)
        else:
            submit_task.delay(project_id, task_type.value)
    except Exception as e:
        logger.error(
            f"Enqueue failed, leaving for sweep: project={project_id} task={task_type.value}: {e}"
        )
