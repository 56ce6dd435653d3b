"""
Batch Coordinator.

Fans a `thumbnail-batch` task out into one provider job per item and folds
item outcomes back into a single parent task. Item failures never abort
their siblings.
"""
import logging
from typing import Any, Dict, List, Optional

from repurpose.config import AppConfig
from repurpose.persistence.batch_repo import BatchRepository
from repurpose.persistence.projects_repo import ProjectsRepository
from repurpose.persistence.tasks_repo import TaskProgressStore
from repurpose.providers.exceptions import ProviderRejected, ProviderTransientFailure
from repurpose.providers.factory import ProviderRegistry
from repurpose.providers.rate_limit import TokenBucketLimiter

from .completion import StatusApplier
from .dispatcher import JobDispatcher
from .exceptions import BatchNotFoundError
from .idempotency import IdempotencyGuard
from .models import BatchJob, JobSpec, ProviderJobRef, StartResult, StatusResult, TaskStatus, TaskType
from .webhooks import callback_url

logger = logging.getLogger(__name__)


class BatchCoordinator:
    """Fan-out and aggregation for batch tasks."""

    task_type = TaskType.THUMBNAIL_BATCH

    def __init__(
        self,
        config: AppConfig,
        dispatcher: JobDispatcher,
        projects: ProjectsRepository,
        store: TaskProgressStore,
        batches: BatchRepository,
        guard: IdempotencyGuard,
        registry: ProviderRegistry,
        limiter: TokenBucketLimiter,
        applier: StatusApplier,
    ):
        self.config = config
        self.dispatcher = dispatcher
        self.projects = projects
        self.store = store
        self.batches = batches
        self.guard = guard
        self.registry = registry
        self.limiter = limiter
        self.applier = applier

    def dispatch_batch(self, user_id: str, project_id: str, items: List[Dict[str, Any]]) -> StartResult:
        """
        Start the parent task with its items. The parent goes through the
        dispatcher's duplicate check; `result.task.batch_id` is the batch id.
        """
        return self.dispatcher.start_task(user_id, project_id, self.task_type, {"items": items})

    def get_batch(self, batch_id: str) -> BatchJob:
        batch = self.batches.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch

    async def submit_items(self, batch_id: str) -> Optional[BatchJob]:
        """
        Create a provider job for every unsubmitted item.

        A rejected create settles that item as failed; a transient failure
        leaves it unsubmitted for the next sweep.
        """
        batch = self.batches.get_batch(batch_id)
        if batch is None:
            logger.warning(f"Batch vanished before submission: batch={batch_id}")
            return None

        parent = self.store.get(batch.project_id, batch.task_type)
        project = self.projects.get(batch.project_id)
        if parent is None or project is None or parent.status != TaskStatus.PROCESSING:
            return batch

        adapter = self.registry.for_task_type(batch.task_type)
        submitted = 0

        for item in batch.items:
            if item.status != TaskStatus.PENDING:
                continue

            claim = self.guard.ensure_item_submission(batch_id, item.item_index)
            if claim.already_exists:
                continue

            spec = JobSpec(
                project_id=batch.project_id,
                task_type=batch.task_type,
                user_id=project.user_id,
                source_url=parent.payload.get("source_url") or project.source_url,
                options=item.payload,
                callback_url=callback_url(self.config.webhooks, adapter.name) if adapter.supports_webhook else None,
                item_index=item.item_index,
            )

            try:
                await self.limiter.acquire(adapter.name, project.user_id)
                job_id = await adapter.create_job(spec)
            except ProviderTransientFailure as e:
                self.guard.release_item(batch_id, item.item_index, claim.token)
                logger.warning(f"Batch item deferred: batch={batch_id} item={item.item_index}: {e.message}")
                continue
            except ProviderRejected as e:
                logger.error(f"Batch item rejected: batch={batch_id} item={item.item_index}: {e.message}")
                self.batches.record_item_result(batch_id, item.item_index, error=e.message)
                continue

            ref = ProviderJobRef(provider=adapter.name, job_id=job_id)
            if self.batches.set_item_provider_ref(batch_id, item.item_index, ref):
                submitted += 1

        if submitted:
            self.store.set_progress(
                batch.project_id, batch.task_type, self.config.orchestration.submitted_percent
            )

        return self.batches.get_batch(batch_id)

    def record_item_result(
        self,
        batch_id: str,
        item_index: int,
        status: StatusResult,
    ) -> BatchJob:
        """Settle one item from a canonical status and return the new aggregate."""
        item = self.batches.get_item(batch_id, item_index)
        if item is None:
            raise BatchNotFoundError(batch_id)

        self.applier.apply_item(item, status)
        return self.get_batch(batch_id)

    async def poll_items(self, batch_id: str) -> Optional[BatchJob]:
        """Query every submitted, unsettled item once."""
        open_items = self.batches.list_open_items(batch_id)
        if not open_items:
            return self.batches.get_batch(batch_id)

        for item in open_items:
            try:
                adapter = self.registry.get(item.provider_ref.provider)
                status = await adapter.query_status(item.provider_ref.job_id, self.task_type)
            except ProviderTransientFailure as e:
                logger.warning(f"Batch item poll deferred: batch={batch_id} item={item.item_index}: {e.message}")
                continue
            except ProviderRejected as e:
                logger.error(f"Batch item poll rejected: batch={batch_id} item={item.item_index}: {e.message}")
                continue

            if not self.applier.apply_item(item, status):
                self.batches.touch_item(batch_id, item.item_index)

        return self.batches.get_batch(batch_id)
