"""
Project endpoints.

Projects are registered by the upload collaborator once the source media
has a stable URL. Deleting a project drops its tasks, batch items and
artifacts; late provider callbacks for them are acknowledged and ignored.
"""
import uuid
import sqlite3
import logging

from fastapi import APIRouter, Depends, status

from repurpose.auth import get_current_user_id, get_owned_project
from repurpose.orchestration.factory import Orchestrator, get_orchestrator
from repurpose.orchestration.models import Project

from ..exceptions import ConflictError, NotFoundError
from ..schemas import CreateProjectRequest, ProjectResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projects", tags=["Projects"])


@router.post(
    "",
    response_model=ProjectResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register Project",
)
async def create_project(
    request: CreateProjectRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ProjectResponse:
    project_id = request.project_id or f"proj_{uuid.uuid4().hex[:12]}"

    try:
        project = orchestrator.projects.create(project_id, user_id, request.source_url)
    except sqlite3.IntegrityError:
        raise ConflictError("Project", project_id)

    return ProjectResponse.from_project(project, [])


@router.get(
    "/{project_id}",
    response_model=ProjectResponse,
    summary="Get Project",
)
async def get_project(
    project: Project = Depends(get_owned_project),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ProjectResponse:
    tasks = orchestrator.store.list_for_project(project.project_id)
    return ProjectResponse.from_project(project, tasks)


@router.delete(
    "/{project_id}",
    status_code=status.HTTP_200_OK,
    summary="Delete Project",
)
async def delete_project(
    project: Project = Depends(get_owned_project),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    if not orchestrator.projects.delete(project.project_id):
        raise NotFoundError("Project", project.project_id)

    logger.info(f"Project deleted: {project.project_id}")
    return {"deleted": True, "project_id": project.project_id}
