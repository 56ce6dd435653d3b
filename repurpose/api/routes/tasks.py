"""
Task endpoints.

POST starts a task (202 when accepted, 200 for a duplicate start).
GET returns the progress snapshot the UI polls; each read also drives one
rate-capped reconciliation poll.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Response, status

from repurpose.auth import get_current_user_id, get_owned_project
from repurpose.orchestration.factory import Orchestrator, get_orchestrator
from repurpose.orchestration.models import Project
from repurpose.orchestration.payloads import parse_task_type

from ..dependencies import schedule_submission
from ..schemas import ProjectTasksResponse, StartTaskResponse, TaskSnapshot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["Tasks"])


@router.post(
    "/{project_id}/{task_type}",
    response_model=StartTaskResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start Task",
    description="Start processing a task for a project. Repeated starts are harmless.",
)
async def start_task(
    project_id: str,
    task_type: str,
    response: Response,
    background_tasks: BackgroundTasks,
    payload: Optional[Dict[str, Any]] = Body(default=None),
    user_id: str = Depends(get_current_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> StartTaskResponse:
    result = orchestrator.dispatcher.start_task(user_id, project_id, task_type, payload)

    task = result.task
    if result.accepted:
        schedule_submission(orchestrator, background_tasks, project_id, task.task_type)
        message = "Task accepted"
    else:
        response.status_code = status.HTTP_200_OK
        message = f"Task {result.reason}"
        logger.info(f"Duplicate start ignored: project={project_id} task={task.task_type.value} ({result.reason})")

    return StartTaskResponse(
        accepted=result.accepted,
        message=message,
        batch_id=task.batch_id,
        task=TaskSnapshot.from_task(task),
    )


@router.get(
    "/{project_id}/{task_type}",
    response_model=TaskSnapshot,
    summary="Task Progress",
)
async def get_task(
    task_type: str,
    project: Project = Depends(get_owned_project),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskSnapshot:
    """Progress snapshot. Polls the provider at most once per minimum poll gap."""
    resolved = parse_task_type(task_type)
    outcome = await orchestrator.reconciler.poll_once(project.project_id, resolved)

    return TaskSnapshot.from_task(outcome.task, message=outcome.message)


@router.get(
    "/{project_id}",
    response_model=ProjectTasksResponse,
    summary="Project Tasks",
)
async def list_project_tasks(
    project: Project = Depends(get_owned_project),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ProjectTasksResponse:
    """All task snapshots for a project, read from the store only."""
    tasks = orchestrator.store.list_for_project(project.project_id)
    return ProjectTasksResponse(
        project_id=project.project_id,
        project_status=project.status.value,
        tasks=[TaskSnapshot.from_task(t) for t in tasks],
    )
