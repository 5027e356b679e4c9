"""
Contact Directory for Stageflow.

Answers two questions for the notification pipeline:
1. Who should receive a project's notifications (recipient candidates)
2. How to reach a recipient on a given channel (email, phone, push)

Recipient resolution:
- A project's related people each get their own notification
- A project with no related people gets one client-level notification
  (recipient ``None``)

Contact resolution:
- Person's notification email, then email; person's phone
- Fall back to the project client's contact only when the person is
  unknown or has neither an email nor a phone. A person reachable on one
  channel is never sent to the client on the other
"""
import logging
from typing import Optional

from stageflow.core.database import SupabaseClient, get_supabase_client
from stageflow.models.schemas import ContactInfo, Project


logger = logging.getLogger(__name__)


class ContactDirectory:
    """Supabase-backed lookup of notification recipients and their contact details."""

    def __init__(self, db: Optional[SupabaseClient] = None):
        self.db = db or get_supabase_client()

    def recipients_for(self, project: Project) -> list[Optional[str]]:
        """
        Recipient candidates for a project.

        Returns:
            Person ids, or ``[None]`` for a single client-level recipient
        """
        people = [person_id for person_id in project.related_people if person_id]
        if not people:
            return [None]
        # Keep first occurrence order, drop duplicates
        return list(dict.fromkeys(people))

    def _get_person(self, person_id: str) -> Optional[dict]:
        response = self.db.client.table("people").select("*").eq("id", person_id).execute()
        return response.data[0] if response.data else None

    def _get_client(self, client_id: str) -> Optional[dict]:
        response = self.db.client.table("clients").select("*").eq("id", client_id).execute()
        return response.data[0] if response.data else None

    def _get_push_subscriptions(self, person_id: str) -> list[dict]:
        response = self.db.client.table("push_subscriptions").select("*").eq(
            "person_id", person_id
        ).eq("is_active", True).execute()
        return response.data or []

    def contact_for(
        self,
        recipient_id: Optional[str],
        client_id: Optional[str] = None
    ) -> tuple[ContactInfo, str]:
        """
        Resolve how to reach a recipient.

        Args:
            recipient_id: Person id, or None for the project's client
            client_id: The project's client, used as the fallback

        Returns:
            Tuple of (ContactInfo, display name)
        """
        email = None
        phone = None
        name = ""
        push_subscriptions: list[dict] = []

        if recipient_id:
            person = self._get_person(recipient_id)
            if person:
                email = person.get("notification_email") or person.get("email")
                phone = person.get("phone")
                name = person.get("name") or ""
                push_subscriptions = self._get_push_subscriptions(recipient_id)
            else:
                logger.warning(f"Recipient {recipient_id} not found in people, using client contact")

        if not email and not phone and client_id:
            client = self._get_client(client_id)
            if client:
                email = email or client.get("email")
                phone = phone or client.get("phone")
                name = name or client.get("name") or ""

        if not name and email:
            name = email.split("@")[0]

        return ContactInfo(email=email, phone=phone, push_subscriptions=push_subscriptions), name
