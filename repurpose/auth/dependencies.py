"""
Authentication dependencies for FastAPI.

The middleware only establishes who is calling; project ownership is
checked here so every route that takes a project_id path parameter gets
the same 404/403 behaviour.
"""
import logging

from fastapi import Depends, HTTPException, Request, status

from repurpose.orchestration.factory import Orchestrator, get_orchestrator
from repurpose.orchestration.models import Project

from .middleware import USER_ID_HEADER

logger = logging.getLogger(__name__)


async def get_current_user_id(request: Request) -> str:
    """User id placed on request.state by AuthMiddleware. 401 when absent."""
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return user_id

    # Only reachable when the middleware runs with require_auth=False
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "error": "Authentication required",
            "code": "AUTH_REQUIRED",
            "message": f"Missing {USER_ID_HEADER} header",
        },
    )


async def get_owned_project(
    project_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Project:
    """
    Resolve the project_id path parameter for the calling user.

    Raises ProjectNotFoundError (404) or ProjectNotOwnedError (403); both
    are rendered by the orchestration error handler.
    """
    project = orchestrator.dispatcher.get_owned_project(user_id, project_id)
    logger.debug(f"Project {project_id} resolved for user {user_id}")
    return project
