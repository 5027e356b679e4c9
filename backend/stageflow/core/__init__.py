# Core modules - Database, Config, Exceptions
from .database import get_supabase_client
from .config import settings
from .exceptions import (
    StageflowException,
    InvalidTransitionError,
    InvalidStageError,
    InvalidRangeError,
    NotFoundError,
    NotificationNotFoundError,
    ProjectNotFoundError,
    TransitionConflictError,
    DatabaseError,
    ConfigurationError,
)

__all__ = [
    "get_supabase_client",
    "settings",
    "StageflowException",
    "InvalidTransitionError",
    "InvalidStageError",
    "InvalidRangeError",
    "NotFoundError",
    "NotificationNotFoundError",
    "ProjectNotFoundError",
    "TransitionConflictError",
    "DatabaseError",
    "ConfigurationError",
]
