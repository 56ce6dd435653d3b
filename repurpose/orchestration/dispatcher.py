"""
Job Dispatcher.

Two halves:
- start_task(): synchronous and fast. Validates, enforces one live task per
  (project, task type) and moves the task to `processing` at the accepted
  checkpoint. Safe to call any number of times.
- submit(): the asynchronous half run by a worker. Guard, rate limiter and
  provider create call; records the provider job id at the submitted
  checkpoint. Safe to redeliver.
"""
import uuid
import logging
from typing import Any, Dict, Optional, Union

from repurpose.config import AppConfig
from repurpose.persistence.projects_repo import ProjectsRepository
from repurpose.persistence.tasks_repo import TaskProgressStore
from repurpose.providers.exceptions import ProviderRejected, ProviderTransientFailure
from repurpose.providers.factory import ProviderRegistry
from repurpose.providers.rate_limit import TokenBucketLimiter

from .exceptions import ProjectNotFoundError, ProjectNotOwnedError
from .idempotency import IdempotencyGuard
from .models import JobSpec, Project, ProviderJobRef, StartResult, Task, TaskType
from .payloads import parse_task_type, validate_payload
from .webhooks import callback_url

logger = logging.getLogger(__name__)


class JobDispatcher:
    """Accepts start requests and submits provider jobs."""

    def __init__(
        self,
        config: AppConfig,
        projects: ProjectsRepository,
        store: TaskProgressStore,
        guard: IdempotencyGuard,
        registry: ProviderRegistry,
        limiter: TokenBucketLimiter,
    ):
        self.config = config
        self.projects = projects
        self.store = store
        self.guard = guard
        self.registry = registry
        self.limiter = limiter

    def get_owned_project(self, user_id: str, project_id: str) -> Project:
        project = self.projects.get(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        if project.user_id != user_id:
            raise ProjectNotOwnedError(user_id, project_id)
        return project

    def start_task(
        self,
        user_id: str,
        project_id: str,
        task_type: Union[str, TaskType],
        payload: Optional[Dict[str, Any]] = None,
    ) -> StartResult:
        """
        Accept a start request.

        Raises:
            ProjectNotFoundError: Unknown project
            ProjectNotOwnedError: Caller does not own the project
            ValidationError: Unknown task type or invalid payload
        """
        if not isinstance(task_type, TaskType):
            task_type = parse_task_type(task_type)

        self.get_owned_project(user_id, project_id)
        normalized = validate_payload(task_type, payload, self.config.orchestration.max_batch_items)

        batch_id = None
        batch_items = None
        if task_type.is_batch:
            batch_id = uuid.uuid4().hex
            batch_items = normalized.pop("items")
            normalized["item_count"] = len(batch_items)

        accepted, task, reason = self.store.begin(
            project_id,
            task_type,
            normalized,
            self.config.orchestration.accepted_percent,
            batch_id=batch_id,
            batch_items=batch_items,
        )

        if not accepted:
            logger.info(f"Duplicate start ignored ({reason}): {task.log_context()}")
        return StartResult(accepted=accepted, task=task, reason=reason)

    async def submit(self, project_id: str, task_type: TaskType) -> Optional[Task]:
        """
        Create the provider job for an accepted task.

        ProviderRejected marks the task failed. ProviderTransientFailure
        (after adapter retries) returns the task to `pending` with nothing
        recorded as a failure.
        """
        task_type = TaskType(task_type)
        claim = self.guard.ensure_single_submission(project_id, task_type)
        if claim.already_exists:
            return self.store.get(project_id, task_type)

        task = self.store.get(project_id, task_type)
        project = self.projects.get(project_id)
        if task is None or project is None:
            logger.warning(f"Task vanished before submission: project={project_id} task={task_type.value}")
            return None

        try:
            adapter = self.registry.for_task_type(task_type)
            spec = JobSpec(
                project_id=project_id,
                task_type=task_type,
                user_id=project.user_id,
                source_url=task.payload.get("source_url") or project.source_url,
                options=task.payload,
                callback_url=callback_url(self.config.webhooks, adapter.name) if adapter.supports_webhook else None,
            )
            await self.limiter.acquire(adapter.name, project.user_id)
            job_id = await adapter.create_job(spec)

        except ProviderTransientFailure as e:
            self.guard.release(project_id, task_type, claim.token)
            logger.warning(
                f"Submission deferred, task back to pending: {task.log_context()}: {e.message}"
            )
            return self.store.get(project_id, task_type)

        except ProviderRejected as e:
            logger.error(f"Provider rejected job: {task.log_context()}: {e.message}")
            self.store.set_failed(project_id, task_type, e.message)
            return self.store.get(project_id, task_type)

        ref = ProviderJobRef(provider=adapter.name, job_id=job_id)
        if not self.store.set_provider_ref(
            project_id, task_type, ref, self.config.orchestration.submitted_percent
        ):
            logger.error(f"Provider job created but not recorded (orphaned): provider_job={ref}")

        return self.store.get(project_id, task_type)
