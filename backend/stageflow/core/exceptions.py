"""
Custom exceptions for Stageflow.
Provides meaningful error types for different failure scenarios.

Delivery problems are NOT exceptions: a failed send is an expected outcome
and is recorded on the notification row as a failure reason.
"""
from typing import Any, Optional


class StageflowException(Exception):
    """Base exception for all Stageflow errors."""

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        status_code: int = 500
    ):
        self.message = message
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class InvalidTransitionError(StageflowException):
    """Raised when a notification status change is not allowed."""

    def __init__(
        self,
        message: str,
        notification_id: str,
        current_status: str,
        requested_status: str
    ):
        details = {
            "notification_id": notification_id,
            "current_status": current_status,
            "requested_status": requested_status,
        }
        super().__init__(message, details, status_code=409)


class InvalidStageError(StageflowException):
    """Raised when a stage does not belong to the project's type."""

    def __init__(
        self,
        message: str,
        project_id: str,
        stage_id: str,
        project_type_id: Optional[str] = None
    ):
        details = {
            "project_id": project_id,
            "stage_id": stage_id,
        }
        if project_type_id:
            details["project_type_id"] = project_type_id

        super().__init__(message, details, status_code=422)


class InvalidRangeError(StageflowException):
    """Raised when a time range ends before it starts."""

    def __init__(self, message: str, start: Any, end: Any):
        details = {
            "start": str(start),
            "end": str(end),
        }
        super().__init__(message, details, status_code=422)


class NotFoundError(StageflowException):
    """Raised when a referenced record doesn't exist."""

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str
    ):
        details = {
            "resource_type": resource_type,
            "resource_id": resource_id,
        }
        super().__init__(message, details, status_code=404)


class NotificationNotFoundError(NotFoundError):
    """Raised when a scheduled notification id is unknown."""

    def __init__(self, notification_id: str):
        super().__init__(
            f"Scheduled notification {notification_id} not found",
            resource_type="scheduled_notification",
            resource_id=notification_id
        )


class ProjectNotFoundError(NotFoundError):
    """Raised when a project id is unknown."""

    def __init__(self, project_id: str):
        super().__init__(
            f"Project {project_id} not found",
            resource_type="project",
            resource_id=project_id
        )


class TransitionConflictError(StageflowException):
    """Raised when a project's stage changed under a concurrent transition."""

    def __init__(
        self,
        message: str,
        project_id: str,
        expected_stage: Optional[str],
        requested_stage: str
    ):
        details = {
            "project_id": project_id,
            "expected_stage": expected_stage,
            "requested_stage": requested_stage,
        }
        super().__init__(message, details, status_code=409)


class DatabaseError(StageflowException):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        operation: Optional[str] = None,
        original_error: Optional[str] = None
    ):
        details = {}
        if table:
            details["table"] = table
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = original_error

        super().__init__(message, details, status_code=500)


class ConfigurationError(StageflowException):
    """Raised when required configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        config_key: str,
        expected_type: Optional[str] = None
    ):
        details = {
            "config_key": config_key
        }
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(message, details, status_code=500)
