"""
Notification Rule Resolver for Stageflow.

Decides which notification rules apply and when each one fires.
Resolution is pure: nothing is written here, the scheduler materializes
the returned occurrences.

Rule kinds:
- Date rules: N days before/on/after a project's start or due date
- Stage rules: on entry to or exit from a stage
- Reminders: N days after a client task was created
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional

from stageflow.core.database import to_utc
from stageflow.models.enums import (
    DateReference,
    NotificationCategory,
    OffsetType,
    StageTrigger,
    TriggerKind,
)
from stageflow.models.schemas import (
    DateOffsetRule,
    Project,
    RuleOccurrence,
    StageRule,
)
from stageflow.services.contacts import ContactDirectory


logger = logging.getLogger(__name__)


def midnight_utc(value: date) -> datetime:
    """Date rules fire at the start of the day, UTC."""
    return datetime.combine(value, time(0, 0), tzinfo=timezone.utc)


def offset_date(reference: date, offset_type: OffsetType, offset_days: int) -> date:
    """
    Apply a rule offset to a reference date.

    Example:
        reference = 2024-06-10, before, 3 days → 2024-06-07
    """
    if offset_type == OffsetType.BEFORE:
        return reference - timedelta(days=offset_days)
    if offset_type == OffsetType.AFTER:
        return reference + timedelta(days=offset_days)
    return reference


class NotificationRuleResolver:
    """
    Turns rules into concrete occurrences, one per recipient.

    Recipients come from a ContactDirectory; without a project every
    occurrence is client-level.
    """

    def __init__(self, directory: Optional[ContactDirectory] = None):
        self._directory = directory

    @property
    def directory(self) -> ContactDirectory:
        if self._directory is None:
            self._directory = ContactDirectory()
        return self._directory

    def _recipients(self, project: Optional[Project]) -> list[Optional[str]]:
        if project is None:
            return [None]
        return self.directory.recipients_for(project)

    # ==========================================
    # DATE RULES
    # ==========================================

    def resolve_date_rules(
        self,
        rules: Iterable[DateOffsetRule],
        project: Project
    ) -> list[RuleOccurrence]:
        """
        Resolve date-offset rules for one project.

        Rules whose reference date is missing on the project are skipped.

        Args:
            rules: Rules of the project's type (non-date and inactive rules are ignored)
            project: The project to resolve against

        Returns:
            One occurrence per (rule, recipient)
        """
        occurrences = []
        recipients = None

        for rule in rules:
            if not isinstance(rule, DateOffsetRule) or not rule.is_active:
                continue

            if rule.date_reference == DateReference.START_DATE:
                reference = project.start_date
            else:
                reference = project.due_date

            if reference is None:
                logger.debug(
                    f"Rule {rule.id} skipped for project {project.id}: "
                    f"no {rule.date_reference.value}"
                )
                continue

            scheduled_for = midnight_utc(offset_date(reference, rule.offset_type, rule.offset_days))

            if recipients is None:
                recipients = self._recipients(project)

            for recipient_id in recipients:
                occurrences.append(RuleOccurrence(
                    rule_id=rule.id,
                    scheduled_for=scheduled_for,
                    channel=rule.channel,
                    recipient_candidate=recipient_id,
                    trigger_kind=TriggerKind.DATE_OFFSET,
                    category=rule.category,
                    notification_type_id=rule.notification_type_id,
                    date_reference=rule.date_reference,
                    offset_type=rule.offset_type,
                    offset_days=rule.offset_days,
                ))

        return occurrences

    # ==========================================
    # STAGE RULES
    # ==========================================

    def resolve_stage_rules(
        self,
        rules: Iterable[StageRule],
        from_stage: Optional[str],
        to_stage: str,
        transitioned_at: datetime,
        project: Optional[Project] = None
    ) -> list[RuleOccurrence]:
        """
        Resolve stage rules for one transition.

        Exit rules of ``from_stage`` and entry rules of ``to_stage`` fire at
        the transition time.
        """
        scheduled_for = to_utc(transitioned_at)
        occurrences = []
        recipients = None

        for rule in rules:
            if not isinstance(rule, StageRule) or not rule.is_active:
                continue

            if rule.trigger == StageTrigger.EXIT and from_stage is not None and rule.stage_id == from_stage:
                trigger_kind = TriggerKind.STAGE_EXIT
            elif rule.trigger == StageTrigger.ENTRY and rule.stage_id == to_stage:
                trigger_kind = TriggerKind.STAGE_ENTRY
            else:
                continue

            if recipients is None:
                recipients = self._recipients(project)

            for recipient_id in recipients:
                occurrences.append(RuleOccurrence(
                    rule_id=rule.id,
                    scheduled_for=scheduled_for,
                    channel=rule.channel,
                    recipient_candidate=recipient_id,
                    trigger_kind=trigger_kind,
                    category=rule.category,
                    notification_type_id=rule.notification_type_id,
                ))

        return occurrences

    # ==========================================
    # CLIENT REQUEST REMINDERS
    # ==========================================

    def resolve_reminders(
        self,
        rule: StageRule | DateOffsetRule,
        task_created_at: datetime,
        client_task_id: Optional[str] = None,
        recipient_id: Optional[str] = None
    ) -> list[RuleOccurrence]:
        """
        Resolve the client-request reminders of a rule with a client task.

        Each active reminder fires ``days_after_creation`` days after the task
        was created, addressed to the same recipient as the notification
        that created the task.
        """
        if not rule.has_client_task:
            return []

        created_at = to_utc(task_created_at)
        occurrences = []

        for reminder in rule.reminders:
            if not reminder.is_active:
                continue

            occurrences.append(RuleOccurrence(
                rule_id=reminder.id,
                scheduled_for=created_at + timedelta(days=reminder.days_after_creation),
                channel=reminder.channel,
                recipient_candidate=recipient_id,
                trigger_kind=TriggerKind.TASK_REMINDER,
                category=NotificationCategory.CLIENT_REQUEST_REMINDER,
                notification_type_id=rule.notification_type_id,
                client_task_id=client_task_id,
            ))

        return occurrences
