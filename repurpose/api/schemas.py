"""
Pydantic schemas for API requests and responses.
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, Any, Dict, List
from datetime import datetime, timezone

from repurpose.orchestration.models import BatchJob, PollOutcome, Project, Task


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskSnapshot(BaseModel):
    """Progress view of one task, as polled by the UI."""
    project_id: str
    task_type: str
    status: str
    percent: int = Field(ge=0, le=100)
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    stalled: bool = False
    message: Optional[str] = None
    provider_job_id: Optional[str] = None
    batch_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_task(cls, task: Task, message: Optional[str] = None) -> "TaskSnapshot":
        if message is None and task.stalled and not task.is_terminal:
            message = PollOutcome(task=task, stalled=True).message
        return cls(
            project_id=task.project_id,
            task_type=task.task_type.value,
            status=task.status.value,
            percent=task.progress,
            error=task.error,
            result=task.result,
            stalled=task.stalled,
            message=message,
            provider_job_id=task.provider_job_id,
            batch_id=task.batch_id,
            started_at=task.started_at,
            completed_at=task.completed_at,
            updated_at=task.updated_at,
        )


class StartTaskResponse(BaseModel):
    """POST /tasks/{project_id}/{task_type} response."""
    accepted: bool
    message: str
    batch_id: Optional[str] = None
    task: TaskSnapshot


class ProjectTasksResponse(BaseModel):
    """GET /tasks/{project_id} response."""
    project_id: str
    project_status: str
    tasks: List[TaskSnapshot]


class BatchItemResponse(BaseModel):
    index: int
    status: str
    output_url: Optional[str] = None
    error: Optional[str] = None
    provider_job_id: Optional[str] = None


class BatchResponse(BaseModel):
    """GET /batches/{batch_id} response."""
    batch_id: str
    project_id: str
    task_type: str
    status: str
    total: int
    completed: int
    failed: int
    percent: int
    items: List[BatchItemResponse]

    @classmethod
    def from_batch(cls, batch: BatchJob) -> "BatchResponse":
        return cls(
            batch_id=batch.batch_id,
            project_id=batch.project_id,
            task_type=batch.task_type.value,
            status=batch.aggregate_status.value,
            total=batch.total,
            completed=batch.completed,
            failed=batch.failed,
            percent=batch.percent,
            items=[
                BatchItemResponse(
                    index=item.item_index,
                    status=item.status.value,
                    output_url=item.output_url,
                    error=item.error,
                    provider_job_id=item.provider_ref.job_id if item.provider_ref else None,
                )
                for item in batch.items
            ],
        )


class CreateProjectRequest(BaseModel):
    """POST /projects request body (from the upload collaborator)."""
    project_id: Optional[str] = Field(default=None, min_length=1, max_length=100)
    source_url: str = Field(..., min_length=1)

    @field_validator("source_url")
    @classmethod
    def validate_source_url(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("source_url must be an http(s) URL")
        return v


class ProjectResponse(BaseModel):
    """Project with its task snapshots."""
    project_id: str
    user_id: str
    source_url: str
    status: str
    created_at: datetime
    updated_at: datetime
    tasks: List[TaskSnapshot] = Field(default_factory=list)

    @classmethod
    def from_project(cls, project: Project, tasks: List[Task]) -> "ProjectResponse":
        return cls(
            project_id=project.project_id,
            user_id=project.user_id,
            source_url=project.source_url,
            status=project.status.value,
            created_at=project.created_at,
            updated_at=project.updated_at,
            tasks=[TaskSnapshot.from_task(t) for t in tasks],
        )


class WebhookAckResponse(BaseModel):
    """POST /webhooks/{provider} response. Always HTTP 200."""
    received: bool = True
    provider: str
    job_id: str
    matched: bool
    applied: bool = False
    state: Optional[str] = None
    error: Optional[str] = None


class HealthResponse(BaseModel):
    """GET /health response."""
    status: str = "healthy"
    service: str = "repurpose-orchestrator"
    version: str = "1.0.0"
    database_ok: bool = False
    task_queue: str = "inline"
    celery_connected: Optional[bool] = None
    redis_connected: Optional[bool] = None
    timestamp: datetime = Field(default_factory=_utcnow)
