"""
Orchestration domain models.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any


class TaskType(str, Enum):
    """Orchestrated unit of work per project."""
    TRANSCRIPTION = "transcription"
    CLIPS = "clips"
    PERSONA_TRAINING = "persona-training"
    THUMBNAIL_BATCH = "thumbnail-batch"

    @property
    def is_batch(self) -> bool:
        return self == TaskType.THUMBNAIL_BATCH


class TaskStatus(str, Enum):
    """Task lifecycle status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)


class ProjectStatus(str, Enum):
    """Overall project status, derived from its tasks."""
    DRAFT = "draft"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProviderState(str, Enum):
    """Canonical provider job state. Provider vocabularies map onto these."""
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ProviderJobRef:
    """Externally issued job identifier plus the provider that issued it."""
    provider: str
    job_id: str

    def __str__(self) -> str:
        return f"{self.provider}:{self.job_id}"


@dataclass
class Project:
    """Unit of work ownership."""
    project_id: str
    user_id: str
    source_url: str
    status: ProjectStatus
    created_at: datetime
    updated_at: datetime


@dataclass
class Task:
    """One orchestrated unit of work for (project, task type)."""
    project_id: str
    task_type: TaskType
    status: TaskStatus
    progress: int
    payload: Dict[str, Any] = field(default_factory=dict)
    provider_ref: Optional[ProviderJobRef] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    batch_id: Optional[str] = None
    poll_attempts: int = 0
    stalled: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_polled_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def provider_job_id(self) -> Optional[str]:
        return self.provider_ref.job_id if self.provider_ref else None

    def log_context(self) -> str:
        """(project, task, provider job) triple for log lines."""
        return (
            f"project={self.project_id} task={self.task_type.value} "
            f"provider_job={self.provider_ref or '-'}"
        )


@dataclass
class BatchItem:
    """One fanned-out sub-job of a batch task."""
    batch_id: str
    item_index: int
    status: TaskStatus
    payload: Dict[str, Any] = field(default_factory=dict)
    provider_ref: Optional[ProviderJobRef] = None
    output_url: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class BatchJob:
    """Aggregate view over a batch task and its items."""
    batch_id: str
    project_id: str
    task_type: TaskType
    total: int
    completed: int
    failed: int
    items: List[BatchItem] = field(default_factory=list)

    @property
    def settled(self) -> int:
        return self.completed + self.failed

    @property
    def percent(self) -> int:
        if self.total == 0:
            return 0
        return round(100 * self.settled / self.total)

    @property
    def aggregate_status(self) -> TaskStatus:
        if self.total == 0 or self.settled < self.total:
            return TaskStatus.PROCESSING
        if self.completed == 0:
            return TaskStatus.FAILED
        return TaskStatus.COMPLETED


@dataclass
class JobSpec:
    """Provider-neutral description of a job to create."""
    project_id: str
    task_type: TaskType
    user_id: str
    source_url: str
    options: Dict[str, Any] = field(default_factory=dict)
    callback_url: Optional[str] = None
    item_index: Optional[int] = None


@dataclass
class StatusResult:
    """Canonical result of a status query or parsed callback."""
    state: ProviderState
    job_id: Optional[str] = None
    progress_hint: Optional[int] = None
    result: Optional[Dict[str, Any]] = None
    artifacts: List["Artifact"] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class Artifact:
    """Output reference persisted on completion."""
    kind: str
    url: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StartResult:
    """Outcome of a start request."""
    accepted: bool
    task: Task
    reason: str = ""

    @property
    def duplicate(self) -> bool:
        return not self.accepted


@dataclass
class PollOutcome:
    """Outcome of a single reconciliation poll."""
    task: Task
    stalled: bool = False
    queried: bool = False

    @property
    def message(self) -> Optional[str]:
        if self.stalled and not self.task.is_terminal:
            return "Taking longer than expected - still processing"
        return None
