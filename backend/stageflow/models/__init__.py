# Data models - Enums and Pydantic Schemas
from .enums import (
    Channel,
    NotificationCategory,
    NotificationStatus,
    TriggerKind,
    StageTrigger,
    DateReference,
    OffsetType,
    NotificationView,
)
from .schemas import (
    WorkCalendar,
    Stage,
    FieldResponse,
    ChronologyEntry,
    StageDuration,
    StageLimitStatus,
    Project,
    ReminderRule,
    StageRule,
    DateOffsetRule,
    NotificationRule,
    notification_rule_adapter,
    RuleOccurrence,
    ScheduledNotification,
    NotificationFilters,
    ContactInfo,
    GenerateResult,
    SkippedId,
    BulkCancelResult,
    ProcessDueResult,
)

__all__ = [
    # Enums
    "Channel",
    "NotificationCategory",
    "NotificationStatus",
    "TriggerKind",
    "StageTrigger",
    "DateReference",
    "OffsetType",
    "NotificationView",
    # Calendar & Chronology
    "WorkCalendar",
    "Stage",
    "FieldResponse",
    "ChronologyEntry",
    "StageDuration",
    "StageLimitStatus",
    "Project",
    # Rules
    "ReminderRule",
    "StageRule",
    "DateOffsetRule",
    "NotificationRule",
    "notification_rule_adapter",
    "RuleOccurrence",
    # Notifications
    "ScheduledNotification",
    "NotificationFilters",
    "ContactInfo",
    # Results
    "GenerateResult",
    "SkippedId",
    "BulkCancelResult",
    "ProcessDueResult",
]
