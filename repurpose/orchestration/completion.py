"""
Applies a canonical provider status to a task or batch item.

Webhook deliveries and polls both end here, so whichever channel arrives
first completes the task and the other becomes a no-op.
"""
import logging

from repurpose.persistence.tasks_repo import TaskProgressStore
from repurpose.persistence.batch_repo import BatchRepository

from .models import BatchItem, ProviderState, StatusResult, Task

logger = logging.getLogger(__name__)


class StatusApplier:
    """Drives the store from a StatusResult."""

    def __init__(self, store: TaskProgressStore, batches: BatchRepository):
        self.store = store
        self.batches = batches

    def apply_task(self, task: Task, status: StatusResult) -> bool:
        """Returns True if the task row changed."""
        if status.state == ProviderState.READY:
            return self.store.set_result(
                task.project_id,
                task.task_type,
                status.result or {},
                status.artifacts,
            )

        if status.state == ProviderState.FAILED:
            error = status.error or "Provider reported failure"
            logger.warning(f"Provider reported failure: {task.log_context()}: {error}")
            return self.store.set_failed(task.project_id, task.task_type, error)

        if status.progress_hint is not None:
            return self.store.set_progress(task.project_id, task.task_type, status.progress_hint)

        return False

    def apply_item(self, item: BatchItem, status: StatusResult) -> bool:
        """Returns True if the item settled with this status."""
        if status.state == ProviderState.READY:
            result = status.result or {}
            changed, _ = self.batches.record_item_result(
                item.batch_id,
                item.item_index,
                output_url=result.get("output_url"),
                result=result,
                artifacts=status.artifacts,
            )
            return changed

        if status.state == ProviderState.FAILED:
            changed, _ = self.batches.record_item_result(
                item.batch_id,
                item.item_index,
                error=status.error or "Provider reported failure",
            )
            return changed

        return False
