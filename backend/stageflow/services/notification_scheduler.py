"""
Notification Scheduler for Stageflow.

Owns the scheduled notification lifecycle:

    scheduled → sent | failed | cancelled
    cancelled → scheduled   (reactivate)
    failed    → scheduled   (reschedule immediately)
    sent is terminal

Guarantees:
- Materialization is insert-if-absent on the idempotency key, so
  generation can be retried or run concurrently without duplicates
- Every status write is a compare-and-set on the expected prior status
- Delivery claims a row (``claim_token``) before sending; operators can
  only change rows no worker has claimed
- Rows are never deleted
"""
import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, Optional

from pydantic import ValidationError

from stageflow.core.config import settings
from stageflow.core.database import (
    SupabaseClient,
    get_supabase_client,
    to_db_timestamp,
    to_utc,
    utc_now,
)
from stageflow.core.exceptions import (
    InvalidTransitionError,
    NotificationNotFoundError,
)
from stageflow.models.enums import (
    NotificationCategory,
    NotificationStatus,
)
from stageflow.models.schemas import (
    BulkCancelResult,
    DateOffsetRule,
    GenerateResult,
    NotificationFilters,
    NotificationRule,
    ProcessDueResult,
    Project,
    RuleOccurrence,
    ScheduledNotification,
    SkippedId,
    notification_rule_adapter,
)
from stageflow.services.contacts import ContactDirectory
from stageflow.services.rule_resolver import NotificationRuleResolver

if TYPE_CHECKING:
    from stageflow.services.delivery import DeliveryWorker


logger = logging.getLogger(__name__)


TABLE = "scheduled_notifications"


def idempotency_key(project_id: str, occurrence: RuleOccurrence) -> str:
    """
    Key identifying one materialized instance of a rule.

    Format: ``project:rule:recipient:scheduled_for[:client_task]``
    """
    recipient = occurrence.recipient_candidate or "-"
    key = f"{project_id}:{occurrence.rule_id}:{recipient}:{to_db_timestamp(occurrence.scheduled_for)}"
    if occurrence.client_task_id:
        key = f"{key}:{occurrence.client_task_id}"
    return key


def parse_rule(row: dict) -> Optional[NotificationRule]:
    """Parse a notification_rules row into a StageRule or DateOffsetRule."""
    data = {key: value for key, value in row.items() if value is not None}
    try:
        return notification_rule_adapter.validate_python(data)
    except ValidationError as e:
        logger.warning(f"Skipping malformed notification rule {row.get('id')}: {e}")
        return None


def load_rules(db: SupabaseClient, project_type_id: str, kind: Optional[str] = None) -> list[NotificationRule]:
    """Load the active rules of a project type, optionally of one kind."""
    query = db.client.table("notification_rules").select("*").eq(
        "project_type_id", project_type_id
    ).eq("is_active", True)
    if kind:
        query = query.eq("kind", kind)
    response = query.execute()

    rules = []
    for row in response.data or []:
        rule = parse_rule(row)
        if rule is not None:
            rules.append(rule)
    return rules


def get_rule(db: SupabaseClient, rule_id: str) -> Optional[NotificationRule]:
    """Fetch one rule by id (None if unknown)."""
    response = db.client.table("notification_rules").select("*").eq("id", rule_id).execute()
    if not response.data:
        return None
    return parse_rule(response.data[0])


class NotificationScheduler:
    """
    Materializes and mutates scheduled notifications.

    Args:
        db: Supabase client (defaults to the shared client)
        resolver: Rule resolver used by generation
        worker: Delivery worker used by process_due
    """

    def __init__(
        self,
        db: Optional[SupabaseClient] = None,
        resolver: Optional[NotificationRuleResolver] = None,
        worker: Optional["DeliveryWorker"] = None
    ):
        self.db = db or get_supabase_client()
        self.resolver = resolver or NotificationRuleResolver(ContactDirectory(self.db))
        self._worker = worker

    @property
    def worker(self) -> "DeliveryWorker":
        if self._worker is None:
            from stageflow.services.delivery import DeliveryWorker
            self._worker = DeliveryWorker(db=self.db, scheduler=self)
        return self._worker

    # ==========================================
    # MATERIALIZATION
    # ==========================================

    def materialize(self, project_id: str, occurrences: Iterable[RuleOccurrence]) -> int:
        """
        Insert one scheduled row per occurrence unless its key already exists.

        Shared by date generation, stage transitions and reminders.

        Returns:
            Number of rows actually created
        """
        now_iso = to_db_timestamp(utc_now())
        rows_by_key: dict[str, dict] = {}

        for occurrence in occurrences:
            key = idempotency_key(project_id, occurrence)
            if key in rows_by_key:
                continue
            rows_by_key[key] = {
                "id": str(uuid.uuid4()),
                "project_id": project_id,
                "rule_id": occurrence.rule_id,
                "category": occurrence.category.value,
                "channel": occurrence.channel.value,
                "trigger_kind": occurrence.trigger_kind.value,
                "date_reference": occurrence.date_reference.value if occurrence.date_reference else None,
                "offset_type": occurrence.offset_type.value if occurrence.offset_type else None,
                "offset_days": occurrence.offset_days,
                "scheduled_for": to_db_timestamp(occurrence.scheduled_for),
                "status": NotificationStatus.SCHEDULED.value,
                "recipient_id": occurrence.recipient_candidate,
                "notification_type_id": occurrence.notification_type_id,
                "client_task_id": occurrence.client_task_id,
                "claim_token": None,
                "claimed_at": None,
                "idempotency_key": key,
                "created_at": now_iso,
                "updated_at": now_iso,
            }

        if not rows_by_key:
            return 0

        inserted = self.db.insert_if_absent(TABLE, list(rows_by_key.values()), "idempotency_key")

        if inserted:
            logger.info(f"Materialized {len(inserted)} notification(s) for project {project_id}")
        return len(inserted)

    def generate(self, project_type_id: str, now: Optional[datetime] = None) -> GenerateResult:
        """
        Materialize date-rule notifications for every active project of a type.

        Re-running with unchanged inputs creates nothing new.

        Args:
            project_type_id: Project type whose date rules to apply
            now: Reference time for skipping past occurrences

        Returns:
            GenerateResult with created and skipped counts
        """
        now = to_utc(now) if now else utc_now()
        result = GenerateResult(project_type_id=project_type_id)

        rules = [rule for rule in load_rules(self.db, project_type_id, kind="date") if isinstance(rule, DateOffsetRule)]
        if not rules:
            logger.info(f"No active date rules for project type {project_type_id}")
            return result

        response = self.db.client.table("projects").select("*").eq(
            "project_type_id", project_type_id
        ).eq("is_active", True).execute()

        for row in response.data or []:
            project = Project.model_validate(row)
            result.projects_scanned += 1

            occurrences = self.resolver.resolve_date_rules(rules, project)

            if settings.skip_past_date_notifications:
                upcoming = [occ for occ in occurrences if occ.scheduled_for >= now]
                result.skipped_count += len(occurrences) - len(upcoming)
                occurrences = upcoming

            created = self.materialize(project.id, occurrences)
            result.created_count += created
            result.skipped_count += len(occurrences) - created

        logger.info(
            f"Generated notifications for {project_type_id}: "
            f"{result.created_count} created, {result.skipped_count} skipped "
            f"across {result.projects_scanned} project(s)"
        )
        return result

    # ==========================================
    # READS
    # ==========================================

    def _fetch(self, notification_id: str) -> Optional[dict]:
        response = self.db.client.table(TABLE).select("*").eq("id", notification_id).execute()
        return response.data[0] if response.data else None

    def get(self, notification_id: str) -> ScheduledNotification:
        """
        Fetch one scheduled notification.

        Raises:
            NotificationNotFoundError: If the id is unknown
        """
        row = self._fetch(notification_id)
        if row is None:
            raise NotificationNotFoundError(notification_id)
        return ScheduledNotification.model_validate(row)

    def list_for_project(
        self,
        project_id: str,
        filters: Optional[NotificationFilters] = None
    ) -> list[ScheduledNotification]:
        """
        List a project's notifications ordered by scheduled time.

        The ``active`` view means status ``scheduled`` unless a status is
        given explicitly; other views are exact status matches.
        """
        filters = filters or NotificationFilters()

        query = self.db.client.table(TABLE).select("*").eq("project_id", project_id)

        if filters.category:
            query = query.eq("category", filters.category.value)
        if filters.channel:
            query = query.eq("channel", filters.channel.value)
        if filters.recipient_id:
            query = query.eq("recipient_id", filters.recipient_id)
        status = filters.effective_status
        if status:
            query = query.eq("status", status.value)
        if filters.date_from:
            query = query.gte("scheduled_for", to_db_timestamp(filters.date_from))
        if filters.date_to:
            query = query.lte("scheduled_for", to_db_timestamp(filters.date_to))

        response = query.order("scheduled_for").execute()
        return [ScheduledNotification.model_validate(row) for row in response.data or []]

    # ==========================================
    # STATE TRANSITIONS
    # ==========================================

    def _transition(
        self,
        notification_id: str,
        expected: NotificationStatus | list[NotificationStatus],
        update_data: dict,
        claim_token: Optional[str] = None
    ) -> Optional[dict]:
        """Compare-and-set the status; the row must also hold ``claim_token`` (None: unclaimed)."""
        if isinstance(expected, list):
            expected_value = [status.value for status in expected]
        else:
            expected_value = expected.value
        return self.db.compare_and_set(
            TABLE, notification_id, "status", expected_value, update_data,
            where={"claim_token": claim_token}
        )

    def _conflict(self, notification_id: str, requested: NotificationStatus) -> InvalidTransitionError:
        """Build the error for a transition that lost to a concurrent writer."""
        current = self.get(notification_id)
        return InvalidTransitionError(
            f"Cannot move notification from {current.status.value} to {requested.value}",
            notification_id=notification_id,
            current_status=current.status.value,
            requested_status=requested.value
        )

    def bulk_cancel(
        self,
        ids: list[str],
        cancelled_by: Optional[str] = None,
        reason: Optional[str] = None
    ) -> BulkCancelResult:
        """
        Cancel every listed notification that is still scheduled and not
        yet picked up for delivery.

        Ids that are unknown, not scheduled or already claimed by a delivery
        worker are left untouched and reported.
        """
        result = BulkCancelResult()
        unique_ids = list(dict.fromkeys(ids))
        if not unique_ids:
            return result

        response = self.db.client.table(TABLE).select("id, status, claim_token").in_("id", unique_ids).execute()
        current = {row["id"]: row for row in response.data or []}

        now_iso = to_db_timestamp(utc_now())

        for notification_id in unique_ids:
            if notification_id not in current:
                result.skipped.append(SkippedId(id=notification_id, reason="not_found"))
                continue

            status = NotificationStatus(current[notification_id]["status"])
            # A claimed row is already being delivered
            if status != NotificationStatus.SCHEDULED or current[notification_id].get("claim_token"):
                result.skipped.append(SkippedId(
                    id=notification_id,
                    reason="invalid_state",
                    current_status=status
                ))
                continue

            updated = self._transition(notification_id, NotificationStatus.SCHEDULED, {
                "status": NotificationStatus.CANCELLED.value,
                "cancelled_by": cancelled_by,
                "cancelled_at": now_iso,
                "cancel_reason": reason,
            })

            if updated is None:
                latest = self._fetch(notification_id)
                result.skipped.append(SkippedId(
                    id=notification_id,
                    reason="invalid_state",
                    current_status=NotificationStatus(latest["status"]) if latest else None
                ))
                continue

            result.cancelled_count += 1

        logger.info(
            f"Bulk cancel: {result.cancelled_count} cancelled, {len(result.skipped)} skipped"
        )
        return result

    def reactivate(self, notification_id: str) -> ScheduledNotification:
        """
        Move a cancelled notification back to scheduled.

        Raises:
            NotificationNotFoundError: If the id is unknown
            InvalidTransitionError: If the notification is not cancelled
        """
        notification = self.get(notification_id)

        if notification.status != NotificationStatus.CANCELLED:
            raise InvalidTransitionError(
                f"Only cancelled notifications can be reactivated (status: {notification.status.value})",
                notification_id=notification_id,
                current_status=notification.status.value,
                requested_status=NotificationStatus.SCHEDULED.value
            )

        updated = self._transition(notification_id, NotificationStatus.CANCELLED, {
            "status": NotificationStatus.SCHEDULED.value,
            "cancelled_by": None,
            "cancelled_at": None,
            "cancel_reason": None,
        })
        if updated is None:
            raise self._conflict(notification_id, NotificationStatus.SCHEDULED)

        logger.info(f"Reactivated notification {notification_id}")
        return ScheduledNotification.model_validate(updated)

    def reschedule_immediate(
        self,
        notification_id: str,
        now: Optional[datetime] = None
    ) -> ScheduledNotification:
        """
        Schedule a notification to go out now.

        Allowed from scheduled, failed and cancelled. Sent is terminal. A row
        claimed by a delivery worker can only be rescheduled once the claim
        is older than ``delivery_claim_ttl_seconds``; the stale claim is
        released so the row can be picked up again.

        Raises:
            NotificationNotFoundError: If the id is unknown
            InvalidTransitionError: If the notification was already sent or
                is being delivered
        """
        notification = self.get(notification_id)

        if notification.status == NotificationStatus.SENT:
            raise InvalidTransitionError(
                "A sent notification cannot be rescheduled",
                notification_id=notification_id,
                current_status=notification.status.value,
                requested_status=NotificationStatus.SCHEDULED.value
            )

        now = to_utc(now) if now else utc_now()

        if notification.claim_token and not self._claim_expired(notification, now):
            raise InvalidTransitionError(
                "Notification is being delivered",
                notification_id=notification_id,
                current_status=notification.status.value,
                requested_status=NotificationStatus.SCHEDULED.value,
                claimed_at=to_db_timestamp(notification.claimed_at)
            )

        updated = self._transition(
            notification_id,
            [NotificationStatus.SCHEDULED, NotificationStatus.FAILED, NotificationStatus.CANCELLED],
            {
                "status": NotificationStatus.SCHEDULED.value,
                "scheduled_for": to_db_timestamp(now),
                "failure_reason": None,
                "cancelled_by": None,
                "cancelled_at": None,
                "cancel_reason": None,
                "claim_token": None,
                "claimed_at": None,
            },
            claim_token=notification.claim_token
        )
        if updated is None:
            raise self._conflict(notification_id, NotificationStatus.SCHEDULED)

        if notification.claim_token:
            logger.warning(f"Released stale delivery claim on notification {notification_id}")
        logger.info(f"Rescheduled notification {notification_id} for immediate delivery")
        return ScheduledNotification.model_validate(updated)

    @staticmethod
    def _claim_expired(notification: ScheduledNotification, now: datetime) -> bool:
        if notification.claimed_at is None:
            return True
        age = (now - to_utc(notification.claimed_at)).total_seconds()
        return age >= settings.delivery_claim_ttl_seconds

    def cancel_task_reminders(
        self,
        client_task_id: str,
        reason: Optional[str] = None,
        cancelled_by: Optional[str] = None
    ) -> int:
        """
        Cancel the still-scheduled reminders of a client task.

        Called when the client completes or withdraws the task.

        Returns:
            Number of reminders cancelled
        """
        response = self.db.client.table(TABLE).select("id").eq(
            "client_task_id", client_task_id
        ).eq(
            "category", NotificationCategory.CLIENT_REQUEST_REMINDER.value
        ).eq(
            "status", NotificationStatus.SCHEDULED.value
        ).execute()

        ids = [row["id"] for row in response.data or []]
        if not ids:
            return 0

        result = self.bulk_cancel(ids, cancelled_by=cancelled_by, reason=reason or "client task closed")
        logger.info(f"Cancelled {result.cancelled_count} reminder(s) for client task {client_task_id}")
        return result.cancelled_count

    # ==========================================
    # DELIVERY
    # ==========================================

    async def process_due(self, as_of: Optional[datetime] = None) -> ProcessDueResult:
        """
        Deliver every scheduled notification due at ``as_of``.

        Each row is claimed before it is sent. Rows cancelled or claimed by
        another worker after this batch was read are counted as skipped.
        """
        as_of = to_utc(as_of) if as_of else utc_now()
        result = ProcessDueResult()

        response = self.db.client.table(TABLE).select("*").eq(
            "status", NotificationStatus.SCHEDULED.value
        ).is_(
            "claim_token", "null"
        ).lte(
            "scheduled_for", to_db_timestamp(as_of)
        ).order("scheduled_for").limit(settings.delivery_batch_size).execute()

        due = [ScheduledNotification.model_validate(row) for row in response.data or []]
        if not due:
            return result

        logger.info(f"Processing {len(due)} due notification(s) as of {as_of.isoformat()}")

        for notification in due:
            outcome = await self.worker.deliver(notification)
            if outcome == NotificationStatus.SENT:
                result.sent_count += 1
            elif outcome == NotificationStatus.FAILED:
                result.failed_count += 1
            else:
                result.skipped_count += 1

        logger.info(
            f"Processed due notifications: {result.sent_count} sent, "
            f"{result.failed_count} failed, {result.skipped_count} skipped"
        )
        return result
