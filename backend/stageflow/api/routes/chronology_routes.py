"""
Chronology API Routes for Stageflow.

Provides endpoints for project stage history:
- Recording a stage transition
- Reading the history with time spent in each stage
"""
from typing import Optional

from fastapi import APIRouter, Path
from pydantic import BaseModel, Field

from stageflow.core.database import get_supabase_client, utc_now
from stageflow.models.schemas import (
    ChronologyEntry,
    FieldResponse,
    Stage,
    StageLimitStatus,
)
from stageflow.services.business_time import (
    default_calendar,
    format_business_hours,
    format_wall_duration,
)
from stageflow.services.chronology import ChronologyLedger


router = APIRouter(prefix="/api/projects", tags=["Chronology"])


# ==========================================
# PYDANTIC MODELS
# ==========================================

class StageChangeRequest(BaseModel):
    """Request body for moving a project to a stage."""
    to_stage: str = Field(..., description="Target stage id")
    reason: Optional[str] = Field(None, description="Why the stage changed")
    changed_by: Optional[str] = Field(None, description="Who changed it")
    field_responses: list[FieldResponse] = Field(default_factory=list)


class ChronologyItem(BaseModel):
    """A chronology entry with the time spent in its stage."""
    entry: ChronologyEntry
    wall_minutes: int
    business_hours: float
    wall_display: str
    business_display: str


class ChronologyResponse(BaseModel):
    """A project's stage history, newest first."""
    project_id: str
    items: list[ChronologyItem]
    current_stage_limits: Optional[StageLimitStatus] = None


# ==========================================
# ENDPOINTS
# ==========================================

@router.post(
    "/{project_id}/chronology",
    response_model=ChronologyEntry,
    status_code=201,
    summary="Change Project Stage",
    description="Move a project to a stage, record the transition and schedule stage notifications"
)
async def change_project_stage(
    request: StageChangeRequest,
    project_id: str = Path(..., description="Project id")
) -> ChronologyEntry:
    ledger = ChronologyLedger(db=get_supabase_client())
    return ledger.append(
        project_id,
        request.to_stage,
        reason=request.reason,
        changed_by=request.changed_by,
        field_responses=request.field_responses
    )


@router.get(
    "/{project_id}/chronology",
    response_model=ChronologyResponse,
    summary="Get Project Chronology",
    description="Stage history with wall-clock and business time per stage, recomputed on each read"
)
async def get_project_chronology(
    project_id: str = Path(..., description="Project id")
) -> ChronologyResponse:
    db = get_supabase_client()
    calendar = default_calendar()
    ledger = ChronologyLedger(db=db, calendar=calendar)

    entries = ledger.list_entries(project_id)
    now = utc_now()

    items = []
    for index, entry in enumerate(entries):
        duration = ChronologyLedger.time_in_stage(entries, index, calendar, now)
        items.append(ChronologyItem(
            entry=entry,
            wall_minutes=duration.wall_minutes,
            business_hours=duration.business_hours,
            wall_display=format_wall_duration(duration.wall_minutes),
            business_display=format_business_hours(duration.business_hours, calendar),
        ))

    current_stage_limits = None
    if entries:
        response = db.client.table("stages").select("*").eq("id", entries[0].to_stage).execute()
        if response.data:
            stage = Stage.model_validate(response.data[0])
            current_stage_limits = ChronologyLedger.check_stage_limits(entries, stage, calendar, now)

    return ChronologyResponse(
        project_id=project_id,
        items=items,
        current_stage_limits=current_stage_limits
    )
