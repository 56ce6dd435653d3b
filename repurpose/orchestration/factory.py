"""
Orchestrator composition root.

Wires the store, guard, adapters, dispatcher, coordinator, reconciler and
webhook receiver from one AppConfig. API processes and Celery workers each
build their own instance; they share state only through the database.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from repurpose.config import AppConfig, get_config
from repurpose.persistence.batch_repo import BatchRepository
from repurpose.persistence.database import Database
from repurpose.persistence.projects_repo import ProjectsRepository
from repurpose.persistence.tasks_repo import TaskProgressStore
from repurpose.providers.factory import ProviderRegistry
from repurpose.providers.rate_limit import TokenBucketLimiter

from .batch import BatchCoordinator
from .completion import StatusApplier
from .dispatcher import JobDispatcher
from .idempotency import IdempotencyGuard
from .models import Task, TaskType
from .reconciler import PollingReconciler
from .webhooks import WebhookReceiver

logger = logging.getLogger(__name__)


@dataclass
class Orchestrator:
    """All orchestration components for one process."""
    config: AppConfig
    db: Database
    projects: ProjectsRepository
    store: TaskProgressStore
    batches: BatchRepository
    registry: ProviderRegistry
    limiter: TokenBucketLimiter
    guard: IdempotencyGuard
    applier: StatusApplier
    dispatcher: JobDispatcher
    coordinator: BatchCoordinator
    reconciler: PollingReconciler
    receiver: WebhookReceiver

    @classmethod
    def build(
        cls,
        config: AppConfig,
        registry: Optional[ProviderRegistry] = None,
        db: Optional[Database] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "Orchestrator":
        db = db or Database(config.database_path)
        registry = registry or ProviderRegistry.create(config.providers)

        projects = ProjectsRepository(db)
        store = TaskProgressStore(db, projects)
        batches = BatchRepository(db, store)
        limiter = TokenBucketLimiter(
            db,
            config.providers,
            max_wait_seconds=config.orchestration.rate_limit_max_wait_seconds,
            sleep=sleep,
        )
        guard = IdempotencyGuard(store, batches, config.orchestration.claim_ttl_seconds)
        applier = StatusApplier(store, batches)
        dispatcher = JobDispatcher(config, projects, store, guard, registry, limiter)
        coordinator = BatchCoordinator(
            config, dispatcher, projects, store, batches, guard, registry, limiter, applier
        )
        reconciler = PollingReconciler(
            config, store, batches, registry, applier, dispatcher, coordinator, sleep=sleep
        )
        receiver = WebhookReceiver(config.webhooks, registry, store, batches, applier)

        return cls(
            config=config,
            db=db,
            projects=projects,
            store=store,
            batches=batches,
            registry=registry,
            limiter=limiter,
            guard=guard,
            applier=applier,
            dispatcher=dispatcher,
            coordinator=coordinator,
            reconciler=reconciler,
            receiver=receiver,
        )

    async def submit(self, project_id: str, task_type: TaskType) -> Optional[Task]:
        """Asynchronous half of a start; batch tasks fan out per item."""
        task_type = TaskType(task_type)
        if task_type.is_batch:
            task = self.store.get(project_id, task_type)
            if task is None or not task.batch_id:
                return task
            await self.coordinator.submit_items(task.batch_id)
            return self.store.get(project_id, task_type)
        return await self.dispatcher.submit(project_id, task_type)

    async def close(self) -> None:
        await self.registry.close()
        self.db.close()


_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    """Get or create the process-wide orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator.build(get_config())
        logger.info("Orchestrator initialized")
    return _orchestrator


def reset_orchestrator() -> None:
    """Reset orchestrator singleton (for testing)."""
    global _orchestrator
    if _orchestrator is not None:
        _orchestrator.db.close()
    _orchestrator = None


async def shutdown_orchestrator() -> None:
    """Close the process-wide orchestrator if one was built."""
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.close()
        _orchestrator = None
