"""
Pydantic schemas for data validation and serialization.
Covers: work calendars, stages, chronology entries, notification rules,
scheduled notifications and the result objects of the public operations.
"""
from datetime import date, datetime, time
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator

from .enums import (
    Channel,
    DateReference,
    NotificationCategory,
    NotificationStatus,
    NotificationView,
    OffsetType,
    StageTrigger,
    TriggerKind,
)


# ==========================================
# WORK CALENDAR
# ==========================================

class WorkCalendar(BaseModel):
    """
    Working-calendar policy for business time.

    Passed explicitly to every calculation; there is no process-wide
    calendar state.
    """
    model_config = ConfigDict(frozen=True)

    working_days: frozenset[int] = frozenset({1, 2, 3, 4, 5})  # ISO weekdays
    day_start: time = time(9, 0)
    day_end: time = time(17, 30)
    holidays: frozenset[date] = frozenset()
    timezone: str = "UTC"

    @field_validator("working_days")
    @classmethod
    def validate_working_days(cls, value: frozenset[int]) -> frozenset[int]:
        if any(day < 1 or day > 7 for day in value):
            raise ValueError("working_days must be ISO weekdays (1=Monday .. 7=Sunday)")
        return value

    @model_validator(mode='after')
    def validate_window(self) -> 'WorkCalendar':
        """Ensure the daily window is not empty."""
        if self.day_end <= self.day_start:
            raise ValueError("day_end must be after day_start")
        return self

    @property
    def daily_hours(self) -> float:
        """Length of one business day in hours."""
        start = self.day_start.hour * 60 + self.day_start.minute + self.day_start.second / 60
        end = self.day_end.hour * 60 + self.day_end.minute + self.day_end.second / 60
        return (end - start) / 60


# ==========================================
# STAGES & CHRONOLOGY
# ==========================================

class Stage(BaseModel):
    """A workflow stage of a project type."""
    id: str
    project_type_id: str
    name: str = Field(..., min_length=1, max_length=200)
    order: int = Field(..., ge=0)
    color: Optional[str] = None
    assigned_role: Optional[str] = None
    max_instance_time_hours: Optional[float] = Field(None, ge=0)
    max_total_time_hours: Optional[float] = Field(None, ge=0)
    is_final: bool = False


class FieldResponse(BaseModel):
    """Answer to a custom field captured with a stage change."""
    custom_field_id: str
    field_type: str = "short_text"
    value_number: Optional[float] = None
    value_text: Optional[str] = None
    value_boolean: Optional[bool] = None
    value_multi_select: Optional[list[str]] = None


class ChronologyEntry(BaseModel):
    """Immutable record of one stage transition."""
    id: str
    project_id: str
    from_stage: Optional[str] = None
    to_stage: str
    reason: Optional[str] = None
    changed_by: Optional[str] = None
    timestamp: Optional[datetime] = None
    field_responses: list[FieldResponse] = Field(default_factory=list)
    time_in_previous_stage_minutes: Optional[int] = None
    business_minutes_in_previous_stage: Optional[int] = None


class StageDuration(BaseModel):
    """Time spent in one stage visit."""
    wall_minutes: int = 0
    business_hours: float = 0.0


class StageLimitStatus(BaseModel):
    """Outcome of checking a stage's configured time limits."""
    stage_id: str
    instance_business_hours: float
    total_business_hours: float
    instance_exceeded: bool = False
    total_exceeded: bool = False


class Project(BaseModel):
    """The slice of a project the core reads."""
    id: str
    project_type_id: str
    current_stage_id: Optional[str] = None
    client_id: Optional[str] = None
    start_date: Optional[date] = None
    due_date: Optional[date] = None
    is_active: bool = True
    related_people: list[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None


# ==========================================
# NOTIFICATION RULES
# ==========================================

class ReminderRule(BaseModel):
    """Client-request reminder, scheduled relative to client task creation."""
    id: str
    days_after_creation: int = Field(..., ge=0)
    channel: Channel
    is_active: bool = True


class _RuleBase(BaseModel):
    id: str
    project_type_id: str
    channel: Channel
    template_id: Optional[str] = None
    category: NotificationCategory = NotificationCategory.PROJECT_NOTIFICATION
    is_active: bool = True
    has_client_task: bool = False
    reminders: list[ReminderRule] = Field(default_factory=list)

    @property
    def notification_type_id(self) -> str:
        return self.template_id or self.id


class StageRule(_RuleBase):
    """Fires on entry to or exit from a stage."""
    kind: Literal["stage"] = "stage"
    stage_id: str
    trigger: StageTrigger


class DateOffsetRule(_RuleBase):
    """Fires N days before/on/after a project's start or due date."""
    kind: Literal["date"] = "date"
    date_reference: DateReference
    offset_type: OffsetType
    offset_days: int = Field(0, ge=0)

    @model_validator(mode='after')
    def force_zero_offset_on(self) -> 'DateOffsetRule':
        """An 'on' rule never carries an offset."""
        if self.offset_type == OffsetType.ON:
            self.offset_days = 0
        return self


NotificationRule = Annotated[Union[StageRule, DateOffsetRule], Field(discriminator="kind")]

notification_rule_adapter = TypeAdapter(NotificationRule)


class RuleOccurrence(BaseModel):
    """One concrete firing of a rule for one recipient."""
    rule_id: str
    scheduled_for: datetime
    channel: Channel
    recipient_candidate: Optional[str] = None
    trigger_kind: TriggerKind
    category: NotificationCategory = NotificationCategory.PROJECT_NOTIFICATION
    notification_type_id: str
    date_reference: Optional[DateReference] = None
    offset_type: Optional[OffsetType] = None
    offset_days: Optional[int] = None
    client_task_id: Optional[str] = None


# ==========================================
# SCHEDULED NOTIFICATIONS
# ==========================================

class ScheduledNotification(BaseModel):
    """A materialized notification instance."""
    id: str
    project_id: str
    rule_id: str
    category: NotificationCategory
    channel: Channel
    trigger_kind: TriggerKind
    date_reference: Optional[DateReference] = None
    offset_type: Optional[OffsetType] = None
    offset_days: Optional[int] = None
    scheduled_for: datetime
    status: NotificationStatus = NotificationStatus.SCHEDULED
    sent_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    recipient_id: Optional[str] = None
    notification_type_id: str
    client_task_id: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    claim_token: Optional[str] = None
    claimed_at: Optional[datetime] = None
    idempotency_key: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class NotificationFilters(BaseModel):
    """Filters for listing a project's notifications."""
    category: Optional[NotificationCategory] = None
    channel: Optional[Channel] = None
    recipient_id: Optional[str] = None
    status: Optional[NotificationStatus] = None
    view: Optional[NotificationView] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None

    @property
    def effective_status(self) -> Optional[NotificationStatus]:
        """An explicit status wins; the active view means 'scheduled'."""
        if self.status is not None:
            return self.status
        if self.view is None:
            return None
        if self.view == NotificationView.ACTIVE:
            return NotificationStatus.SCHEDULED
        return NotificationStatus(self.view.value)


class ContactInfo(BaseModel):
    """Where a recipient can be reached."""
    email: Optional[str] = None
    phone: Optional[str] = None
    push_subscriptions: list[dict[str, Any]] = Field(default_factory=list)


# ==========================================
# OPERATION RESULTS
# ==========================================

class GenerateResult(BaseModel):
    """Result of a date-rule generation run."""
    project_type_id: str
    created_count: int = 0
    skipped_count: int = 0
    projects_scanned: int = 0


class SkippedId(BaseModel):
    """An id a bulk operation did not touch, and why."""
    id: str
    reason: Literal["not_found", "invalid_state"]
    current_status: Optional[NotificationStatus] = None


class BulkCancelResult(BaseModel):
    """Result of a bulk cancel."""
    cancelled_count: int = 0
    skipped: list[SkippedId] = Field(default_factory=list)


class ProcessDueResult(BaseModel):
    """Result of one processDue pass."""
    sent_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
