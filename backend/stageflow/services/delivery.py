"""
Delivery Worker for Stageflow.

Sends one due notification on its channel and records the outcome.

Flow:
1. Claim the row (still scheduled, not claimed by another worker)
2. Resolve the recipient's contact details
3. Send via the notification service, bounded by a timeout
4. Compare-and-set scheduled → sent / failed under the same claim
5. Record the attempt in notification_history
6. On a won send for a rule with a client task: create the task once
   and schedule its reminders

Delivery problems are outcomes, not exceptions. Only the worker holding
the claim calls a provider; a worker that fails to claim a row does nothing
with it.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from stageflow.core.config import settings
from stageflow.core.database import (
    SupabaseClient,
    from_db_timestamp,
    get_supabase_client,
    to_db_timestamp,
    to_utc,
    utc_now,
)
from stageflow.models.enums import Channel, NotificationStatus
from stageflow.models.schemas import ContactInfo, ScheduledNotification
from stageflow.services.contacts import ContactDirectory
from stageflow.services.notifications import (
    DELIVERY_ERROR,
    MISSING_EMAIL,
    MISSING_PHONE,
    NO_PUSH_SUBSCRIPTION,
    TIMEOUT,
    UNKNOWN_CHANNEL,
    EmailMessage,
    MessageTemplates,
    NotificationService,
    PushMessage,
    SmsMessage,
    failure,
    notification_service,
)

if TYPE_CHECKING:
    from stageflow.models.schemas import NotificationRule
    from stageflow.services.notification_scheduler import NotificationScheduler


logger = logging.getLogger(__name__)


@dataclass
class DeliveryOutcome:
    """Result of one delivery attempt."""
    success: bool
    failure_reason: Optional[str] = None
    external_id: Optional[str] = None
    recipient_email: Optional[str] = None
    recipient_phone: Optional[str] = None


# ==========================================
# CLIENT TASKS
# ==========================================

class ClientTaskCreator:
    """
    Creates the client task that follows a sent notification.

    One task per scheduled notification, enforced by a unique constraint
    on ``client_tasks.scheduled_notification_id``.
    """

    def __init__(self, db: Optional[SupabaseClient] = None):
        self.db = db or get_supabase_client()

    def create(self, notification: ScheduledNotification, created_at: datetime) -> tuple[str, datetime]:
        """
        Create (or find) the client task for a notification.

        Returns:
            Tuple of (task id, task creation time)
        """
        row = {
            "id": str(uuid.uuid4()),
            "project_id": notification.project_id,
            "scheduled_notification_id": notification.id,
            "recipient_id": notification.recipient_id,
            "notification_type_id": notification.notification_type_id,
            "status": "open",
            "created_at": to_db_timestamp(created_at),
        }
        inserted = self.db.insert_if_absent("client_tasks", [row], "scheduled_notification_id")
        if inserted:
            logger.info(f"Created client task {inserted[0]['id']} for notification {notification.id}")
            return inserted[0]["id"], created_at

        response = self.db.client.table("client_tasks").select("*").eq(
            "scheduled_notification_id", notification.id
        ).execute()
        existing = response.data[0]
        return existing["id"], from_db_timestamp(existing["created_at"]) or created_at


# ==========================================
# DELIVERY WORKER
# ==========================================

class DeliveryWorker:
    """
    Sends scheduled notifications and applies their outcome.

    Args:
        db: Supabase client
        sender: Channel senders (email/SMS/push)
        directory: Contact lookup for recipients
        task_creator: Creates client tasks after a send
        scheduler: Used to materialize client-task reminders
    """

    def __init__(
        self,
        db: Optional[SupabaseClient] = None,
        sender: Optional[NotificationService] = None,
        directory: Optional[ContactDirectory] = None,
        task_creator: Optional[ClientTaskCreator] = None,
        scheduler: Optional["NotificationScheduler"] = None
    ):
        self.db = db or get_supabase_client()
        self.sender = sender or notification_service
        self.directory = directory or ContactDirectory(self.db)
        self.task_creator = task_creator or ClientTaskCreator(self.db)
        self._scheduler = scheduler

    @property
    def scheduler(self) -> "NotificationScheduler":
        if self._scheduler is None:
            from stageflow.services.notification_scheduler import NotificationScheduler
            self._scheduler = NotificationScheduler(db=self.db, worker=self)
        return self._scheduler

    def _client_id_for(self, project_id: str) -> Optional[str]:
        response = self.db.client.table("projects").select("client_id").eq("id", project_id).execute()
        return response.data[0].get("client_id") if response.data else None

    # ------------------------------------------
    # ATTEMPT
    # ------------------------------------------

    def _lookup_contact(self, notification: ScheduledNotification) -> tuple[ContactInfo, str]:
        client_id = self._client_id_for(notification.project_id)
        return self.directory.contact_for(notification.recipient_id, client_id)

    async def attempt(self, notification: ScheduledNotification) -> DeliveryOutcome:
        """
        Try to send one notification. Never raises for delivery problems.

        Returns:
            DeliveryOutcome with a ``"<code>: <detail>"`` reason on failure
        """
        try:
            # Blocking lookups run in the executor so the delivery timeout covers them
            loop = asyncio.get_running_loop()
            contact, name = await loop.run_in_executor(None, self._lookup_contact, notification)
            return await self._send(notification, contact, name)
        except Exception as e:
            logger.error(f"Delivery of notification {notification.id} errored: {e}")
            return DeliveryOutcome(success=False, failure_reason=failure(DELIVERY_ERROR, str(e)))

    async def _send(
        self,
        notification: ScheduledNotification,
        contact: ContactInfo,
        name: str
    ) -> DeliveryOutcome:
        if notification.channel == Channel.EMAIL:
            if not contact.email:
                return DeliveryOutcome(
                    success=False,
                    failure_reason=failure(MISSING_EMAIL, "recipient has no email address")
                )
            html_body, text_body = MessageTemplates.scheduled_notification(
                recipient_name=name or "there",
                project_id=notification.project_id,
                category=notification.category,
                notification_type_id=notification.notification_type_id,
            )
            result = await self.sender.send_email(EmailMessage(
                to_email=contact.email,
                to_name=name,
                subject=MessageTemplates.subject(notification.category, notification.notification_type_id),
                html_body=html_body,
                text_body=text_body,
                tracking_id=notification.id,
            ))
            return DeliveryOutcome(
                success=result.success,
                failure_reason=result.error,
                external_id=result.message_id,
                recipient_email=contact.email,
            )

        if notification.channel == Channel.SMS:
            if not contact.phone:
                return DeliveryOutcome(
                    success=False,
                    failure_reason=failure(MISSING_PHONE, "recipient has no phone number")
                )
            result = await self.sender.send_sms(SmsMessage(
                to_phone=contact.phone,
                body=MessageTemplates.short_text(notification.project_id, notification.category),
                tracking_id=notification.id,
            ))
            return DeliveryOutcome(
                success=result.success,
                failure_reason=result.error,
                external_id=result.message_id,
                recipient_phone=contact.phone,
            )

        if notification.channel == Channel.PUSH:
            if not contact.push_subscriptions:
                return DeliveryOutcome(
                    success=False,
                    failure_reason=failure(NO_PUSH_SUBSCRIPTION, "recipient has no active push subscription")
                )
            body = MessageTemplates.short_text(notification.project_id, notification.category)
            title = MessageTemplates.subject(notification.category, notification.notification_type_id)

            results = [
                await self.sender.send_push(PushMessage(
                    subscription=subscription,
                    title=title,
                    body=body,
                    tracking_id=notification.id,
                ))
                for subscription in contact.push_subscriptions
            ]
            # One reached device is enough
            delivered = [r for r in results if r.success]
            if delivered:
                return DeliveryOutcome(success=True, external_id=delivered[0].message_id)
            return DeliveryOutcome(success=False, failure_reason=results[-1].error)

        return DeliveryOutcome(
            success=False,
            failure_reason=failure(UNKNOWN_CHANNEL, f"unsupported channel {notification.channel}")
        )

    # ------------------------------------------
    # DELIVER
    # ------------------------------------------

    def claim(self, notification: ScheduledNotification, now: datetime) -> Optional[str]:
        """
        Take ownership of a due row before anything is sent.

        The row must still be scheduled and unclaimed, so a cancelled row
        or one another worker picked up is never sent.

        Returns:
            The claim token, or None if the row is no longer available
        """
        token = str(uuid.uuid4())
        claimed = self.db.compare_and_set(
            "scheduled_notifications",
            notification.id,
            "status",
            NotificationStatus.SCHEDULED.value,
            {"claim_token": token, "claimed_at": to_db_timestamp(now)},
            where={"claim_token": None}
        )
        return token if claimed else None

    async def deliver(
        self,
        notification: ScheduledNotification,
        now: Optional[datetime] = None
    ) -> Optional[NotificationStatus]:
        """
        Claim the row, attempt delivery under the configured timeout and
        apply the outcome.

        Returns:
            SENT or FAILED when this worker applied the outcome,
            None when the row was cancelled or claimed by another worker
        """
        now = to_utc(now) if now else utc_now()

        token = self.claim(notification, now)
        if token is None:
            logger.info(f"Notification {notification.id} is no longer available for delivery, skipping")
            return None

        timeout = settings.delivery_timeout_seconds

        try:
            outcome = await asyncio.wait_for(self.attempt(notification), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Delivery of notification {notification.id} timed out after {timeout}s")
            outcome = DeliveryOutcome(
                success=False,
                failure_reason=failure(TIMEOUT, f"no response within {timeout:g}s")
            )

        if outcome.success:
            new_status = NotificationStatus.SENT
            update_data = {
                "status": new_status.value,
                "sent_at": to_db_timestamp(now),
                "failure_reason": None,
                "claim_token": None,
            }
        else:
            new_status = NotificationStatus.FAILED
            update_data = {
                "status": new_status.value,
                "failure_reason": outcome.failure_reason,
                "claim_token": None,
            }

        updated = self.db.compare_and_set(
            "scheduled_notifications",
            notification.id,
            "status",
            NotificationStatus.SCHEDULED.value,
            update_data,
            where={"claim_token": token}
        )

        if updated is None:
            logger.error(f"Claim on notification {notification.id} was released during delivery")
            return None

        self._record_history(notification, new_status, outcome, now)

        if new_status == NotificationStatus.SENT:
            logger.info(f"✅ Sent {notification.channel.value} notification {notification.id}")
            self._after_send(notification, now)
        else:
            logger.warning(f"❌ Notification {notification.id} failed: {outcome.failure_reason}")

        return new_status

    def _after_send(self, notification: ScheduledNotification, now: datetime) -> None:
        """Create the client task and its reminders for rules that ask for one."""
        from stageflow.services.notification_scheduler import get_rule

        rule: Optional["NotificationRule"] = get_rule(self.db, notification.rule_id)
        if rule is None or not rule.has_client_task:
            return

        task_id, task_created_at = self.task_creator.create(notification, now)

        self.db.client.table("scheduled_notifications").update({
            "client_task_id": task_id,
            "updated_at": to_db_timestamp(utc_now()),
        }).eq("id", notification.id).execute()

        reminders = self.scheduler.resolver.resolve_reminders(
            rule,
            task_created_at,
            client_task_id=task_id,
            recipient_id=notification.recipient_id
        )
        created = self.scheduler.materialize(notification.project_id, reminders)
        if created:
            logger.info(f"Scheduled {created} reminder(s) for client task {task_id}")

    def _record_history(
        self,
        notification: ScheduledNotification,
        status: NotificationStatus,
        outcome: DeliveryOutcome,
        now: datetime
    ) -> None:
        """Record delivery attempt in notification_history (audit only)."""
        try:
            self.db.client.table("notification_history").insert({
                "id": str(uuid.uuid4()),
                "scheduled_notification_id": notification.id,
                "channel": notification.channel.value,
                "recipient_email": outcome.recipient_email,
                "recipient_phone": outcome.recipient_phone,
                "status": status.value,
                "sent_at": to_db_timestamp(now) if status == NotificationStatus.SENT else None,
                "failure_reason": outcome.failure_reason,
                "external_id": outcome.external_id,
                "created_at": to_db_timestamp(utc_now()),
            }).execute()
        except Exception as e:
            logger.error(f"Failed to record delivery history for {notification.id}: {e}")
