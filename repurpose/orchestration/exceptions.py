"""
Orchestration exceptions.
"""
from typing import Optional

from fastapi import HTTPException, status


class OrchestrationError(Exception):
    """Base orchestration error."""

    def __init__(self, message: str, code: str = "ORCHESTRATION_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": self.message, "code": self.code},
        )


class ValidationError(OrchestrationError):
    """Bad payload or unknown task type. Rejected before any task is created."""

    def __init__(self, message: str, detail: Optional[str] = None):
        self.detail = detail
        super().__init__(message=message, code="VALIDATION_ERROR")

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "Validation failed",
                "code": self.code,
                "message": self.message,
                "detail": self.detail,
            },
        )


class ProjectNotFoundError(OrchestrationError):
    """Raised when a project id is unknown."""

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(message=f"Project not found: {project_id}", code="PROJECT_NOT_FOUND")

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": self.message, "code": self.code},
        )


class ProjectNotOwnedError(OrchestrationError):
    """Raised when a user acts on a project they don't own."""

    def __init__(self, user_id: str, project_id: str):
        self.user_id = user_id
        self.project_id = project_id
        super().__init__(
            message=f"User {user_id} does not own project {project_id}",
            code="PROJECT_NOT_OWNED",
        )

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "Access denied",
                "code": self.code,
                "message": "You do not have permission to access this project",
            },
        )


class TaskNotFoundError(OrchestrationError):
    """Raised when no task exists for (project, task type)."""

    def __init__(self, project_id: str, task_type: str):
        self.project_id = project_id
        self.task_type = task_type
        super().__init__(
            message=f"Task not found: {project_id}/{task_type}",
            code="TASK_NOT_FOUND",
        )

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": self.message, "code": self.code},
        )


class UnknownProviderError(OrchestrationError):
    """Webhook addressed to a provider name that is not registered."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(message=f"Unknown provider: {provider}", code="UNKNOWN_PROVIDER")

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": self.message, "code": self.code},
        )


class WebhookAuthError(OrchestrationError):
    """Webhook token missing or wrong."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(message=f"Invalid webhook token for {provider}", code="INVALID_WEBHOOK_TOKEN")

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": self.message, "code": self.code},
        )


class MalformedWebhookError(OrchestrationError):
    """Webhook body is not JSON, has no provider job id, or has mis-shaped fields."""

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(message=f"Malformed {provider} webhook: {reason}", code="MALFORMED_WEBHOOK")

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": self.message, "code": self.code},
        )


class BatchNotFoundError(OrchestrationError):
    """Raised when a batch id is unknown."""

    def __init__(self, batch_id: str):
        self.batch_id = batch_id
        super().__init__(message=f"Batch not found: {batch_id}", code="BATCH_NOT_FOUND")

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": self.message, "code": self.code},
        )
