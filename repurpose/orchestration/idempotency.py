"""
Idempotency Guard.

Prevents a second external job from being created for the same
(project, task type) or batch item when a start is retried or redelivered.

Two layers:
- a recorded provider job id short-circuits immediately;
- otherwise a compare-and-set claim decides which worker may call the
  provider. A claim older than the TTL is considered abandoned (crashed
  worker) and may be taken over.

The UNIQUE constraint on provider refs and the `provider_job_id IS NULL`
condition on the write are the authoritative guards; the claim keeps
concurrent workers from paying for duplicate provider jobs.
"""
import uuid
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from repurpose.persistence.database import utc_now
from repurpose.persistence.tasks_repo import TaskProgressStore
from repurpose.persistence.batch_repo import BatchRepository

from .models import ProviderJobRef, TaskType, TaskStatus

logger = logging.getLogger(__name__)


@dataclass
class SubmissionClaim:
    """Guard decision. When `already_exists` is False the holder must submit."""
    already_exists: bool
    existing_ref: Optional[ProviderJobRef] = None
    token: Optional[str] = None


class IdempotencyGuard:
    """Durable single-submission guard for tasks and batch items."""

    def __init__(self, store: TaskProgressStore, batches: BatchRepository, claim_ttl_seconds: float = 300.0):
        self.store = store
        self.batches = batches
        self.claim_ttl = timedelta(seconds=claim_ttl_seconds)

    def ensure_single_submission(self, project_id: str, task_type: TaskType) -> SubmissionClaim:
        task = self.store.get(project_id, task_type)

        if task is None:
            logger.warning(f"Submission skipped, task missing: project={project_id} task={TaskType(task_type).value}")
            return SubmissionClaim(already_exists=True)

        if task.provider_ref is not None:
            logger.info(f"Provider job already recorded, reusing: {task.log_context()}")
            return SubmissionClaim(already_exists=True, existing_ref=task.provider_ref)

        if task.status != TaskStatus.PROCESSING:
            return SubmissionClaim(already_exists=True)

        token = uuid.uuid4().hex
        if self.store.try_claim_submission(project_id, task_type, token, utc_now() - self.claim_ttl):
            return SubmissionClaim(already_exists=False, token=token)

        # Lost the CAS: another worker holds a live claim or has just recorded a ref
        task = self.store.get(project_id, task_type)
        existing = task.provider_ref if task else None
        logger.info(
            f"Submission claim held elsewhere: project={project_id} "
            f"task={TaskType(task_type).value} provider_job={existing or '-'}"
        )
        return SubmissionClaim(already_exists=True, existing_ref=existing)

    def release(self, project_id: str, task_type: TaskType, token: str) -> bool:
        """Drop a claim after a transient failure; the task returns to pending."""
        return self.store.release_submission(project_id, task_type, token)

    def ensure_item_submission(self, batch_id: str, item_index: int) -> SubmissionClaim:
        item = self.batches.get_item(batch_id, item_index)

        if item is None:
            return SubmissionClaim(already_exists=True)

        if item.provider_ref is not None:
            return SubmissionClaim(already_exists=True, existing_ref=item.provider_ref)

        if item.status != TaskStatus.PENDING:
            return SubmissionClaim(already_exists=True)

        token = uuid.uuid4().hex
        if self.batches.try_claim_item(batch_id, item_index, token, utc_now() - self.claim_ttl):
            return SubmissionClaim(already_exists=False, token=token)

        item = self.batches.get_item(batch_id, item_index)
        return SubmissionClaim(already_exists=True, existing_ref=item.provider_ref if item else None)

    def release_item(self, batch_id: str, item_index: int, token: str) -> bool:
        """Drop an item claim; the item stays unsubmitted for the next sweep."""
        return self.batches.release_item(batch_id, item_index, token)
