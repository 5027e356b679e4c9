"""
Chronology Ledger for Stageflow.

Append-only log of project stage transitions, and the time-in-stage
accounting derived from it.

Key Rules:
- Entry n's from_stage equals entry n-1's to_stage (null only on the first)
- Appends compare-and-set the project's current stage, so two concurrent
  transitions cannot both win
- Entries are appended in time order; a transition earlier than the
  latest entry is rejected
- Entries are listed newest first; the newest entry's duration runs
  until ``now`` and is recomputed on every read
- A stage limit of 0 or None is unlimited; reaching the limit counts as over
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from stageflow.core.database import (
    SupabaseClient,
    get_supabase_client,
    to_db_timestamp,
    to_utc,
    utc_now,
)
from stageflow.core.exceptions import (
    DatabaseError,
    InvalidRangeError,
    InvalidStageError,
    ProjectNotFoundError,
    TransitionConflictError,
)
from stageflow.models.schemas import (
    ChronologyEntry,
    FieldResponse,
    Project,
    Stage,
    StageDuration,
    StageLimitStatus,
    WorkCalendar,
)
from stageflow.services.business_time import business_hours, default_calendar, wall_minutes
from stageflow.services.notification_scheduler import NotificationScheduler, load_rules


logger = logging.getLogger(__name__)


class ChronologyLedger:
    """
    Records stage transitions and materializes the stage rules they trigger.

    Args:
        db: Supabase client
        scheduler: Notification scheduler that materializes stage rules
        calendar: Calendar used to snapshot business time on append
    """

    def __init__(
        self,
        db: Optional[SupabaseClient] = None,
        scheduler: Optional[NotificationScheduler] = None,
        calendar: Optional[WorkCalendar] = None
    ):
        self.db = db or get_supabase_client()
        self.scheduler = scheduler or NotificationScheduler(db=self.db)
        self.calendar = calendar or default_calendar()

    # ==========================================
    # APPEND
    # ==========================================

    def _get_project(self, project_id: str) -> Project:
        response = self.db.client.table("projects").select("*").eq("id", project_id).execute()
        if not response.data:
            raise ProjectNotFoundError(project_id)
        return Project.model_validate(response.data[0])

    def _get_stage(self, project: Project, stage_id: str) -> Stage:
        response = self.db.client.table("stages").select("*").eq("id", stage_id).eq(
            "project_type_id", project.project_type_id
        ).execute()
        if not response.data:
            raise InvalidStageError(
                f"Stage {stage_id} is not a stage of project type {project.project_type_id}",
                project_id=project.id,
                stage_id=stage_id,
                project_type_id=project.project_type_id
            )
        return Stage.model_validate(response.data[0])

    def _latest_entry(self, project_id: str) -> Optional[ChronologyEntry]:
        response = self.db.client.table("project_chronology").select("*").eq(
            "project_id", project_id
        ).order("timestamp", desc=True).limit(1).execute()
        if not response.data:
            return None
        return ChronologyEntry.model_validate(response.data[0])

    def append(
        self,
        project_id: str,
        to_stage: str,
        reason: Optional[str] = None,
        changed_by: Optional[str] = None,
        field_responses: Optional[list[FieldResponse]] = None,
        timestamp: Optional[datetime] = None
    ) -> ChronologyEntry:
        """
        Move a project to a stage and record the transition.

        Exit rules of the previous stage and entry rules of the new stage
        are materialized at the transition time.

        Args:
            project_id: Project to move
            to_stage: Target stage id (must belong to the project's type)
            reason: Optional free-text reason
            changed_by: Who made the change
            field_responses: Custom field answers captured with the change
            timestamp: Transition time (defaults to now)

        Returns:
            The appended ChronologyEntry

        Raises:
            ProjectNotFoundError: Unknown project
            InvalidStageError: Stage does not belong to the project's type
            InvalidRangeError: ``timestamp`` is earlier than the latest entry
            DatabaseError: The entry could not be recorded (stage restored)
            TransitionConflictError: The project's stage changed concurrently
        """
        project = self._get_project(project_id)
        self._get_stage(project, to_stage)

        timestamp = to_utc(timestamp) if timestamp else utc_now()
        from_stage = project.current_stage_id

        previous = self._latest_entry(project_id)
        if previous is not None and previous.timestamp is not None and timestamp < to_utc(previous.timestamp):
            raise InvalidRangeError(
                f"Transition time precedes the latest entry of project {project_id}",
                start=to_utc(previous.timestamp).isoformat(),
                end=timestamp.isoformat()
            )
        since = previous.timestamp if previous else project.created_at

        if since is not None and to_utc(since) <= timestamp:
            minutes_in_previous = wall_minutes(since, timestamp)
            business_minutes = int(business_hours(since, timestamp, self.calendar) * 60)
        else:
            minutes_in_previous = None
            business_minutes = None

        updated = self.db.compare_and_set(
            "projects",
            project_id,
            "current_stage_id",
            from_stage,
            {"current_stage_id": to_stage}
        )
        if updated is None:
            raise TransitionConflictError(
                f"Project {project_id} changed stage while moving to {to_stage}",
                project_id=project_id,
                expected_stage=from_stage,
                requested_stage=to_stage
            )

        entry = ChronologyEntry(
            id=str(uuid.uuid4()),
            project_id=project_id,
            from_stage=from_stage,
            to_stage=to_stage,
            reason=reason,
            changed_by=changed_by,
            timestamp=timestamp,
            field_responses=field_responses or [],
            time_in_previous_stage_minutes=minutes_in_previous,
            business_minutes_in_previous_stage=business_minutes,
        )

        row = entry.model_dump(mode="json")
        row["timestamp"] = to_db_timestamp(timestamp)
        try:
            self.db.client.table("project_chronology").insert(row).execute()
        except Exception as e:
            logger.error(f"Failed to record transition of project {project_id}, restoring stage: {e}")
            self.db.compare_and_set("projects", project_id, "current_stage_id", to_stage, {"current_stage_id": from_stage})
            raise DatabaseError(
                "Failed to record stage transition",
                table="project_chronology",
                operation="insert",
                original_error=str(e)
            ) from e

        logger.info(
            f"Project {project_id} moved {from_stage or '(start)'} → {to_stage}"
            + (f" by {changed_by}" if changed_by else "")
        )

        rules = load_rules(self.db, project.project_type_id, kind="stage")
        occurrences = self.scheduler.resolver.resolve_stage_rules(
            rules,
            from_stage,
            to_stage,
            timestamp,
            project=project.model_copy(update={"current_stage_id": to_stage})
        )
        self.scheduler.materialize(project_id, occurrences)

        return entry

    def list_entries(self, project_id: str) -> list[ChronologyEntry]:
        """All entries of a project, newest first."""
        self._get_project(project_id)
        response = self.db.client.table("project_chronology").select("*").eq(
            "project_id", project_id
        ).order("timestamp", desc=True).execute()
        return [ChronologyEntry.model_validate(row) for row in response.data or []]

    # ==========================================
    # TIME IN STAGE
    # ==========================================

    @staticmethod
    def time_in_stage(
        entries: list[ChronologyEntry],
        index: int,
        calendar: WorkCalendar,
        now: Optional[datetime] = None
    ) -> StageDuration:
        """
        Time spent in the stage entered by ``entries[index]``.

        ``entries`` is ordered newest first. The newest entry is measured
        against ``now``; older ones against the entry that followed them.
        """
        entry = entries[index]
        if index == 0:
            end = now or utc_now()
        else:
            end = entries[index - 1].timestamp

        start = entry.timestamp
        if start is None or end is None:
            return StageDuration()

        if to_utc(end) < to_utc(start):
            logger.warning(f"Chronology entry {entry.id} is newer than its successor, counting zero")
            return StageDuration()

        return StageDuration(
            wall_minutes=wall_minutes(start, end),
            business_hours=business_hours(start, end, calendar)
        )

    @staticmethod
    def total_time_in_stage(
        entries: list[ChronologyEntry],
        stage_id: str,
        calendar: WorkCalendar,
        now: Optional[datetime] = None
    ) -> StageDuration:
        """Sum of every visit to a stage."""
        total = StageDuration()
        for index, entry in enumerate(entries):
            if entry.to_stage != stage_id:
                continue
            visit = ChronologyLedger.time_in_stage(entries, index, calendar, now)
            total.wall_minutes += visit.wall_minutes
            total.business_hours += visit.business_hours
        return total

    @staticmethod
    def check_stage_limits(
        entries: list[ChronologyEntry],
        stage: Stage,
        calendar: WorkCalendar,
        now: Optional[datetime] = None
    ) -> StageLimitStatus:
        """
        Compare time in a stage against its configured limits.

        The instance limit applies to the most recent visit, the total limit
        to all visits together.
        """
        instance_hours = 0.0
        for index, entry in enumerate(entries):
            if entry.to_stage == stage.id:
                instance_hours = ChronologyLedger.time_in_stage(entries, index, calendar, now).business_hours
                break

        total_hours = ChronologyLedger.total_time_in_stage(entries, stage.id, calendar, now).business_hours

        return StageLimitStatus(
            stage_id=stage.id,
            instance_business_hours=instance_hours,
            total_business_hours=total_hours,
            instance_exceeded=bool(stage.max_instance_time_hours) and instance_hours >= stage.max_instance_time_hours,
            total_exceeded=bool(stage.max_total_time_hours) and total_hours >= stage.max_total_time_hours,
        )
