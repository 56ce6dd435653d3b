"""
Celery tasks for provider submission and reconciliation.

Each message carries keys only. Handlers re-read the task from the database
and are no-ops when there is nothing left to do, so redelivery is harmless.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable

from celery import Task

from repurpose.celery_app import celery_app

from .factory import Orchestrator, get_orchestrator
from .models import TaskType

logger = logging.getLogger(__name__)


class OrchestrationTask(Task):
    """Base Celery task with lifecycle logging."""

    abstract = True
    track_started = True
    acks_late = True
    reject_on_worker_lost = True

    max_retries = 2
    default_retry_delay = 30

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        logger.error(f"Task {task_id} failed for {args or kwargs}: {exc}")
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        logger.warning(f"Task {task_id} retrying for {args or kwargs}: {exc}")
        super().on_retry(exc, task_id, args, kwargs, einfo)


def run_async(work: Callable[[Orchestrator], Awaitable[Any]]) -> Any:
    """
    Run one coroutine against the worker's orchestrator.
    HTTP clients are closed afterwards since each call gets a fresh event loop.
    """
    orchestrator = get_orchestrator()

    async def runner():
        try:
            return await work(orchestrator)
        finally:
            await orchestrator.registry.close()

    return asyncio.run(runner())


def _snapshot(task) -> dict:
    if task is None:
        return {"found": False}
    return {
        "found": True,
        "status": task.status.value,
        "progress": task.progress,
        "provider_job": str(task.provider_ref) if task.provider_ref else None,
    }


@celery_app.task(
    bind=True,
    base=OrchestrationTask,
    name="orchestration.submit_task",
)
def submit_task(self, project_id: str, task_type: str) -> dict:
    """Create the provider job for an accepted task, then poll if no webhook will come."""
    logger.info(f"Submitting: project={project_id} task={task_type}")

    async def work(orchestrator: Orchestrator):
        return await orchestrator.submit(project_id, TaskType(task_type))

    task = run_async(work)

    if task is not None and task.provider_ref is not None and not task.is_terminal:
        if not get_orchestrator().config.webhooks.callbacks_enabled:
            reconcile_task.apply_async(
                args=[project_id, task_type],
                countdown=get_orchestrator().config.orchestration.poll_interval_seconds,
            )

    return _snapshot(task)


@celery_app.task(
    bind=True,
    base=OrchestrationTask,
    name="orchestration.submit_batch_items",
)
def submit_batch_items(self, batch_id: str) -> dict:
    """Fan out the unsubmitted items of a batch."""
    async def work(orchestrator: Orchestrator):
        return await orchestrator.coordinator.submit_items(batch_id)

    batch = run_async(work)
    if batch is None:
        return {"found": False}
    return {"found": True, "total": batch.total, "settled": batch.settled, "percent": batch.percent}


@celery_app.task(
    bind=True,
    base=OrchestrationTask,
    name="orchestration.reconcile_task",
)
def reconcile_task(self, project_id: str, task_type: str) -> dict:
    """Poll one task with backoff until it settles or is flagged stalled."""
    async def work(orchestrator: Orchestrator):
        return await orchestrator.reconciler.poll_until_settled(project_id, TaskType(task_type))

    outcome = run_async(work)
    return {**_snapshot(outcome.task), "stalled": outcome.stalled}


@celery_app.task(
    bind=True,
    base=OrchestrationTask,
    name="orchestration.reconcile_stale_tasks",
)
def reconcile_stale_tasks(self) -> dict:
    """Periodic sweep over tasks that have gone quiet."""
    async def work(orchestrator: Orchestrator):
        return await orchestrator.reconciler.reconcile_stale()

    return run_async(work)
