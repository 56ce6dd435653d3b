"""
Task orchestration.

Domain models, payload schemas and errors live here; the components that
touch storage or providers are imported from their own modules
(dispatcher, batch, reconciler, webhooks, factory).
"""
from .models import (
    TaskType,
    TaskStatus,
    ProjectStatus,
    ProviderState,
    ProviderJobRef,
    Project,
    Task,
    BatchItem,
    BatchJob,
    JobSpec,
    StatusResult,
    Artifact,
    StartResult,
    PollOutcome,
)
from .exceptions import (
    OrchestrationError,
    ValidationError,
    ProjectNotFoundError,
    ProjectNotOwnedError,
    TaskNotFoundError,
    BatchNotFoundError,
    UnknownProviderError,
    WebhookAuthError,
    MalformedWebhookError,
)
from .payloads import validate_payload, parse_task_type

__all__ = [
    # Models
    "TaskType",
    "TaskStatus",
    "ProjectStatus",
    "ProviderState",
    "ProviderJobRef",
    "Project",
    "Task",
    "BatchItem",
    "BatchJob",
    "JobSpec",
    "StatusResult",
    "Artifact",
    "StartResult",
    "PollOutcome",

    # Exceptions
    "OrchestrationError",
    "ValidationError",
    "ProjectNotFoundError",
    "ProjectNotOwnedError",
    "TaskNotFoundError",
    "BatchNotFoundError",
    "UnknownProviderError",
    "WebhookAuthError",
    "MalformedWebhookError",

    # Payloads
    "validate_payload",
    "parse_task_type",
]
