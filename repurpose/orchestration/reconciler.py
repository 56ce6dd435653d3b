"""
Polling Reconciler.

Pull channel for providers whose webhooks never arrive (callbacks disabled,
dropped deliveries, local development). Every poll goes through the same
status application as webhooks, so the two channels converge.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Dict

from repurpose.config import AppConfig
from repurpose.persistence.batch_repo import BatchRepository
from repurpose.persistence.database import utc_now
from repurpose.persistence.tasks_repo import TaskProgressStore
from repurpose.providers.exceptions import ProviderRejected, ProviderTransientFailure
from repurpose.providers.factory import ProviderRegistry

from .batch import BatchCoordinator
from .completion import StatusApplier
from .dispatcher import JobDispatcher
from .exceptions import TaskNotFoundError
from .models import PollOutcome, Task, TaskType

logger = logging.getLogger(__name__)


class PollingReconciler:
    """Bounded status polling with durable attempt counting."""

    def __init__(
        self,
        config: AppConfig,
        store: TaskProgressStore,
        batches: BatchRepository,
        registry: ProviderRegistry,
        applier: StatusApplier,
        dispatcher: JobDispatcher,
        coordinator: BatchCoordinator,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.settings = config.orchestration
        self.store = store
        self.batches = batches
        self.registry = registry
        self.applier = applier
        self.dispatcher = dispatcher
        self.coordinator = coordinator
        self._sleep = sleep

    def _recently_polled(self, task: Task) -> bool:
        if task.last_polled_at is None:
            return False
        gap = (utc_now() - task.last_polled_at).total_seconds()
        return gap < self.settings.min_poll_gap_seconds

    async def poll_once(self, project_id: str, task_type: TaskType) -> PollOutcome:
        """
        Query the provider once for a non-terminal task.

        Terminal tasks, unsubmitted tasks and tasks polled less than the
        minimum gap ago are returned unchanged without a provider call.

        Raises:
            TaskNotFoundError: No task for (project, task type)
        """
        task_type = TaskType(task_type)
        task = self.store.get(project_id, task_type)
        if task is None:
            raise TaskNotFoundError(project_id, task_type.value)

        if task.is_terminal or self._recently_polled(task):
            return PollOutcome(task=task, stalled=task.stalled)

        if task_type.is_batch:
            if not task.batch_id:
                return PollOutcome(task=task, stalled=task.stalled)
            attempts = self.store.record_poll_attempt(project_id, task_type)
            await self.coordinator.poll_items(task.batch_id)
        else:
            if task.provider_ref is None:
                return PollOutcome(task=task, stalled=task.stalled)
            attempts = self.store.record_poll_attempt(project_id, task_type)
            await self._query_and_apply(task)

        task = self.store.get(project_id, task_type)
        if task is None:
            raise TaskNotFoundError(project_id, task_type.value)

        if not task.is_terminal and attempts >= self.settings.max_poll_attempts:
            if self.store.mark_stalled(project_id, task_type):
                logger.warning(f"Task stalled after {attempts} polls, still processing: {task.log_context()}")
            task = self.store.get(project_id, task_type)

        return PollOutcome(task=task, stalled=task.stalled, queried=True)

    async def _query_and_apply(self, task: Task) -> None:
        try:
            adapter = self.registry.get(task.provider_ref.provider)
            status = await adapter.query_status(task.provider_ref.job_id, task.task_type)
        except ProviderTransientFailure as e:
            logger.warning(f"Status query deferred: {task.log_context()}: {e.message}")
            return
        except ProviderRejected as e:
            logger.error(f"Status query rejected: {task.log_context()}: {e.message}")
            return

        if self.applier.apply_task(task, status):
            logger.info(f"Poll applied {status.state.value}: {task.log_context()}")

    async def poll_until_settled(self, project_id: str, task_type: TaskType) -> PollOutcome:
        """
        Worker loop: poll with exponential backoff until the task is terminal
        or flagged stalled.
        """
        interval = self.settings.poll_interval_seconds

        while True:
            outcome = await self.poll_once(project_id, task_type)
            if outcome.task.is_terminal or outcome.stalled:
                return outcome

            await self._sleep(interval)
            interval = min(
                interval * self.settings.poll_backoff_multiplier,
                self.settings.poll_max_interval_seconds,
            )

    async def reconcile_stale(self, limit: int = 100) -> Dict[str, int]:
        """
        Beat sweep. Polls submitted tasks quiet for longer than the webhook
        grace window, re-submits tasks and batch items whose submission never
        happened, and polls open batch items.
        """
        cutoff = utc_now() - timedelta(seconds=self.settings.webhook_grace_seconds)
        summary = {"polled": 0, "resubmitted": 0, "batches": 0, "errors": 0}

        for task in self.store.list_stale(cutoff, limit=limit):
            try:
                outcome = await self.poll_once(task.project_id, task.task_type)
                if outcome.queried:
                    summary["polled"] += 1
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Sweep poll failed: {task.log_context()}: {e}", exc_info=True)

        for task in self.store.list_unsubmitted(cutoff, limit=limit):
            try:
                submitted = await self.dispatcher.submit(task.project_id, task.task_type)
                # A live claim or a deferred create leaves the ref unset
                if submitted is not None and submitted.provider_ref is not None:
                    summary["resubmitted"] += 1
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Sweep resubmit failed: {task.log_context()}: {e}", exc_info=True)

        for batch_id in self.batches.list_batches_needing_attention(cutoff, limit=limit):
            try:
                await self.coordinator.submit_items(batch_id)
                await self.coordinator.poll_items(batch_id)
                summary["batches"] += 1
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"Sweep batch failed: batch={batch_id}: {e}", exc_info=True)

        if any(summary.values()):
            logger.info(f"Reconcile sweep: {summary}")
        return summary
