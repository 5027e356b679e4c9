"""
Notification API Routes for Stageflow.

Provides endpoints for scheduled notifications:
- Generation of date-rule notifications
- Processing due notifications
- Operator actions (bulk cancel, reactivate, reschedule)
- Listing a project's notifications
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Path, Query
from pydantic import BaseModel, Field

from stageflow.core.database import get_supabase_client
from stageflow.models.enums import (
    Channel,
    NotificationCategory,
    NotificationStatus,
    NotificationView,
)
from stageflow.models.schemas import (
    BulkCancelResult,
    GenerateResult,
    NotificationFilters,
    ProcessDueResult,
    ScheduledNotification,
)
from stageflow.services.notification_scheduler import NotificationScheduler


router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


# ==========================================
# PYDANTIC MODELS
# ==========================================

class ProcessDueRequest(BaseModel):
    """Request body for processing due notifications."""
    as_of: Optional[datetime] = Field(
        None,
        description="Deliver notifications scheduled at or before this time (default: now)"
    )


class BulkCancelRequest(BaseModel):
    """Request body for bulk cancellation."""
    ids: list[str] = Field(..., min_length=1, description="Scheduled notification ids")
    cancelled_by: Optional[str] = Field(None, description="Who is cancelling")
    reason: Optional[str] = Field(None, description="Why the notifications are cancelled")


def _scheduler() -> NotificationScheduler:
    return NotificationScheduler(db=get_supabase_client())


# ==========================================
# GENERATION & DELIVERY
# ==========================================

@router.post(
    "/generate/{project_type_id}",
    response_model=GenerateResult,
    summary="Generate Date-Rule Notifications",
    description="Materialize date-offset notifications for every active project of a type. Safe to repeat."
)
async def generate_notifications(
    project_type_id: str = Path(..., description="Project type id")
) -> GenerateResult:
    return _scheduler().generate(project_type_id)


@router.post(
    "/process-due",
    response_model=ProcessDueResult,
    summary="Process Due Notifications",
    description="Deliver every scheduled notification that is due"
)
async def process_due_notifications(request: Optional[ProcessDueRequest] = None) -> ProcessDueResult:
    as_of = request.as_of if request else None
    return await _scheduler().process_due(as_of=as_of)


# ==========================================
# OPERATOR ACTIONS
# ==========================================

@router.post(
    "/bulk-cancel",
    response_model=BulkCancelResult,
    summary="Bulk Cancel Notifications",
    description="Cancel scheduled notifications. Ids that are unknown or not scheduled are reported, not changed."
)
async def bulk_cancel_notifications(request: BulkCancelRequest) -> BulkCancelResult:
    return _scheduler().bulk_cancel(
        request.ids,
        cancelled_by=request.cancelled_by,
        reason=request.reason
    )


@router.post(
    "/{notification_id}/reactivate",
    response_model=ScheduledNotification,
    summary="Reactivate Notification",
    description="Move a cancelled notification back to scheduled"
)
async def reactivate_notification(
    notification_id: str = Path(..., description="Scheduled notification id")
) -> ScheduledNotification:
    return _scheduler().reactivate(notification_id)


@router.post(
    "/{notification_id}/reschedule-immediate",
    response_model=ScheduledNotification,
    summary="Reschedule Notification Now",
    description="Schedule a notification for immediate delivery (not allowed once sent)"
)
async def reschedule_notification_immediate(
    notification_id: str = Path(..., description="Scheduled notification id")
) -> ScheduledNotification:
    return _scheduler().reschedule_immediate(notification_id)


# ==========================================
# READS
# ==========================================

@router.get(
    "/project/{project_id}",
    response_model=list[ScheduledNotification],
    summary="List Project Notifications",
    description="List a project's scheduled notifications with optional filters"
)
async def list_project_notifications(
    project_id: str = Path(..., description="Project id"),
    category: Optional[NotificationCategory] = Query(None),
    channel: Optional[Channel] = Query(None),
    recipient_id: Optional[str] = Query(None),
    status: Optional[NotificationStatus] = Query(None),
    view: Optional[NotificationView] = Query(None, description="active, sent, failed or cancelled"),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None)
) -> list[ScheduledNotification]:
    filters = NotificationFilters(
        category=category,
        channel=channel,
        recipient_id=recipient_id,
        status=status,
        view=view,
        date_from=date_from,
        date_to=date_to,
    )
    return _scheduler().list_for_project(project_id, filters)


@router.get(
    "/{notification_id}",
    response_model=ScheduledNotification,
    summary="Get Notification"
)
async def get_notification(
    notification_id: str = Path(..., description="Scheduled notification id")
) -> ScheduledNotification:
    return _scheduler().get(notification_id)
