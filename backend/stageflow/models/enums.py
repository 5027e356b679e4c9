"""
Enum types that match the PostgreSQL ENUM types in Supabase.
These must stay in sync with the database schema.
"""
from enum import Enum


class Channel(str, Enum):
    """
    Delivery channel of a notification.
    Matches: create type notification_type as enum ('email', 'sms', 'push');
    """
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class NotificationCategory(str, Enum):
    """Why a notification exists."""
    PROJECT_NOTIFICATION = "project_notification"
    CLIENT_REQUEST_REMINDER = "client_request_reminder"


class NotificationStatus(str, Enum):
    """
    Scheduled notification lifecycle.
    Matches: create type notification_status as enum ('scheduled', 'sent', 'failed', 'cancelled');
    """
    SCHEDULED = "scheduled"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TriggerKind(str, Enum):
    """What materialized a scheduled notification."""
    STAGE_ENTRY = "stage_entry"
    STAGE_EXIT = "stage_exit"
    DATE_OFFSET = "date_offset"
    TASK_REMINDER = "task_reminder"


class StageTrigger(str, Enum):
    """
    When a stage rule fires.
    Matches: create type stage_trigger as enum ('entry', 'exit');
    """
    ENTRY = "entry"
    EXIT = "exit"


class DateReference(str, Enum):
    """
    Project date a date rule is anchored to.
    Matches: create type date_reference as enum ('start_date', 'due_date');
    """
    START_DATE = "start_date"
    DUE_DATE = "due_date"


class OffsetType(str, Enum):
    """
    Direction of a date offset.
    Matches: create type date_offset_type as enum ('before', 'on', 'after');
    """
    BEFORE = "before"
    ON = "on"
    AFTER = "after"


class NotificationView(str, Enum):
    """Operator-facing list views (not a DB enum)."""
    ACTIVE = "active"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"
