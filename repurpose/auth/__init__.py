"""
Authentication Module.
Identity via X-User-Id header set by the upstream auth collaborator.
"""
from .middleware import AuthMiddleware, USER_ID_HEADER, USER_ID_COOKIE
from .dependencies import get_current_user_id, get_owned_project

__all__ = [
    "AuthMiddleware",
    "USER_ID_HEADER",
    "USER_ID_COOKIE",
    "get_current_user_id",
    "get_owned_project",
]
