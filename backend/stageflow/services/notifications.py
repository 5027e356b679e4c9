"""
Notification Service for Stageflow.

Handles all outbound messages:
- Email (via SendGrid/SMTP)
- SMS (via an HTTP gateway)
- Push (via an HTTP gateway)

When a channel has no provider configured the message is logged and
reported as sent, so development setups work without credentials.

Failures are returned, never raised. Every error string starts with a
machine-readable code, e.g. ``"provider_rejected: SendGrid error: 400"``.
"""
import asyncio
import hashlib
import logging
import smtplib
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Optional

import httpx

from stageflow.core.config import settings
from stageflow.models.enums import Channel, NotificationCategory


# Configure logging
logger = logging.getLogger(__name__)


# Failure codes carried in NotificationResult.error / failure_reason
MISSING_EMAIL = "missing_email"
MISSING_PHONE = "missing_phone"
NO_PUSH_SUBSCRIPTION = "no_push_subscription"
PROVIDER_REJECTED = "provider_rejected"
TIMEOUT = "timeout"
UNKNOWN_CHANNEL = "unknown_channel"
DELIVERY_ERROR = "delivery_error"


def failure(code: str, detail: str) -> str:
    """Build a ``"<code>: <detail>"`` failure reason."""
    return f"{code}: {detail}"


@dataclass
class NotificationResult:
    """Result of a notification attempt."""
    success: bool
    channel: Channel
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class EmailMessage:
    """Email message structure."""
    to_email: str
    to_name: str
    subject: str
    html_body: str
    text_body: Optional[str] = None
    tracking_id: Optional[str] = None


@dataclass
class SmsMessage:
    """SMS message structure."""
    to_phone: str
    body: str
    tracking_id: Optional[str] = None


@dataclass
class PushMessage:
    """Push message structure."""
    subscription: dict[str, Any]
    title: str
    body: str
    tracking_id: Optional[str] = None


def _dev_message_id(text: str) -> str:
    return f"dev-{hashlib.md5(text.encode()).hexdigest()[:8]}"


# ==========================================
# MESSAGE TEMPLATES
# ==========================================

class MessageTemplates:
    """Message bodies for scheduled notifications using simple string formatting."""

    BASE_HTML = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .content {{ background: #fff; border: 1px solid #e0e0e0; padding: 30px; border-radius: 8px; }}
        .footer {{ text-align: center; padding: 20px; color: #888; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="container">
        {content}
    </div>
</body>
</html>
"""

    @classmethod
    def subject(cls, category: NotificationCategory, notification_type_id: str) -> str:
        if category == NotificationCategory.CLIENT_REQUEST_REMINDER:
            return "Reminder: we are still waiting on your response"
        return f"Project update ({notification_type_id})"

    @classmethod
    def scheduled_notification(
        cls,
        recipient_name: str,
        project_id: str,
        category: NotificationCategory,
        notification_type_id: str,
    ) -> tuple[str, str]:
        """Generate the email bodies for a scheduled notification."""
        if category == NotificationCategory.CLIENT_REQUEST_REMINDER:
            line = "This is a reminder about an outstanding request on your project."
        else:
            line = "There is an update on your project."

        html_content = f"""
        <div class="content">
            <p>Hi {recipient_name},</p>
            <p>{line}</p>
            <p><strong>Project:</strong> {project_id}</p>
        </div>
        <div class="footer">
            <p>This is an automated message from {settings.app_name} ({notification_type_id}).</p>
        </div>
"""

        text_content = f"""
Hi {recipient_name},

{line}

Project: {project_id}

---
{settings.app_name}
"""

        return cls.BASE_HTML.format(content=html_content), text_content.strip()

    @classmethod
    def short_text(cls, project_id: str, category: NotificationCategory) -> str:
        """One-line body for SMS and push."""
        if category == NotificationCategory.CLIENT_REQUEST_REMINDER:
            return f"{settings.app_name}: reminder, a request on project {project_id} is waiting for you."
        return f"{settings.app_name}: there is an update on project {project_id}."


# ==========================================
# NOTIFICATION SERVICE
# ==========================================

class NotificationService:
    """
    Unified notification service supporting multiple channels.

    Features:
    - Email via SMTP or SendGrid
    - SMS and push via HTTP gateways
    - Dev fallback that only logs
    """

    def __init__(self, http_timeout: Optional[float] = None):
        self.http_timeout = http_timeout or settings.delivery_timeout_seconds

    async def send_ops_alert(self, subject: str, body: str, to_email: str, to_name: str = "") -> NotificationResult:
        """
        Send a plain-text alert to operations (used by the job scheduler).
        """
        message = EmailMessage(
            to_email=to_email,
            to_name=to_name or to_email.split("@")[0],
            subject=subject,
            html_body=f"<html><body><pre>{body}</pre></body></html>",
            text_body=body
        )
        return await self.send_email(message)

    # ------------------------------------------
    # EMAIL
    # ------------------------------------------

    async def send_email(self, message: EmailMessage) -> NotificationResult:
        """
        Send email via configured provider.

        Supports:
        - SendGrid (if configured)
        - SMTP
        """
        if settings.sendgrid_api_key:
            return await self._send_via_sendgrid(message)
        if settings.smtp_host:
            return await self._send_via_smtp(message)

        # Log to console if no email provider configured
        logger.warning(f"Email not configured. Would send to: {message.to_email}")
        logger.info(f"Subject: {message.subject}")

        return NotificationResult(
            success=True,
            channel=Channel.EMAIL,
            message_id=_dev_message_id(message.subject + message.to_email)
        )

    async def _send_via_smtp(self, message: EmailMessage) -> NotificationResult:
        """Send email via SMTP."""
        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = message.subject
            msg['From'] = f"{settings.smtp_from_name} <{settings.smtp_from_email}>"
            msg['To'] = f"{message.to_name} <{message.to_email}>"

            if message.text_body:
                msg.attach(MIMEText(message.text_body, 'plain'))
            msg.attach(MIMEText(message.html_body, 'html'))

            # Run in executor to avoid blocking
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._smtp_send_sync, msg)

            return NotificationResult(
                success=True,
                channel=Channel.EMAIL,
                message_id=f"smtp-{datetime.now(timezone.utc).timestamp()}"
            )

        except smtplib.SMTPRecipientsRefused as e:
            logger.error(f"SMTP rejected recipient {message.to_email}: {e}")
            return NotificationResult(
                success=False,
                channel=Channel.EMAIL,
                error=failure(PROVIDER_REJECTED, f"SMTP refused recipient: {e}")
            )
        except Exception as e:
            logger.error(f"SMTP send failed: {e}")
            return NotificationResult(
                success=False,
                channel=Channel.EMAIL,
                error=failure(DELIVERY_ERROR, str(e))
            )

    def _smtp_send_sync(self, msg: MIMEMultipart) -> None:
        """Synchronous SMTP send for executor."""
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=self.http_timeout) as server:
            if settings.smtp_use_tls:
                server.starttls()
            if settings.smtp_user and settings.smtp_password:
                server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(msg)

    async def _send_via_sendgrid(self, message: EmailMessage) -> NotificationResult:
        """Send email via SendGrid API."""
        payload = {
            "personalizations": [{
                "to": [{"email": message.to_email, "name": message.to_name}]
            }],
            "from": {"email": settings.sendgrid_from_email, "name": settings.app_name},
            "subject": message.subject,
            "content": [
                {"type": "text/plain", "value": message.text_body or ""},
                {"type": "text/html", "value": message.html_body}
            ]
        }
        headers = {
            "Authorization": f"Bearer {settings.sendgrid_api_key}",
            "Content-Type": "application/json"
        }

        result = await self._post(
            Channel.EMAIL,
            "https://api.sendgrid.com/v3/mail/send",
            payload,
            headers,
            provider="SendGrid"
        )
        return result

    # ------------------------------------------
    # SMS / PUSH
    # ------------------------------------------

    async def send_sms(self, message: SmsMessage) -> NotificationResult:
        """Send an SMS via the configured gateway."""
        if not settings.sms_enabled:
            logger.warning(f"SMS not configured. Would send to: {message.to_phone}")
            logger.info(f"Body: {message.body}")
            return NotificationResult(
                success=True,
                channel=Channel.SMS,
                message_id=_dev_message_id(message.body + message.to_phone)
            )

        payload = {
            "to": message.to_phone,
            "from": settings.sms_sender_id,
            "body": message.body,
            "reference": message.tracking_id,
        }
        return await self._post(
            Channel.SMS,
            settings.sms_gateway_url,
            payload,
            self._gateway_headers(settings.sms_gateway_token),
            provider="SMS gateway"
        )

    async def send_push(self, message: PushMessage) -> NotificationResult:
        """Send a push message to one subscription via the configured gateway."""
        if not settings.push_enabled:
            logger.warning(f"Push not configured. Would send: {message.title}")
            return NotificationResult(
                success=True,
                channel=Channel.PUSH,
                message_id=_dev_message_id(message.title + message.body)
            )

        payload = {
            "subscription": message.subscription,
            "title": message.title,
            "body": message.body,
            "reference": message.tracking_id,
        }
        return await self._post(
            Channel.PUSH,
            settings.push_gateway_url,
            payload,
            self._gateway_headers(settings.push_gateway_token),
            provider="Push gateway"
        )

    @staticmethod
    def _gateway_headers(token: Optional[str]) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _post(
        self,
        channel: Channel,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str],
        provider: str
    ) -> NotificationResult:
        """POST a JSON payload to a provider and map the response to a result."""
        try:
            async with httpx.AsyncClient(timeout=self.http_timeout) as client:
                response = await client.post(url, json=payload, headers=headers)

            if response.status_code in [200, 201, 202]:
                message_id = (
                    response.headers.get("X-Message-Id")
                    or f"{channel.value}-{datetime.now(timezone.utc).timestamp()}"
                )
                return NotificationResult(success=True, channel=channel, message_id=message_id)

            return NotificationResult(
                success=False,
                channel=channel,
                error=failure(PROVIDER_REJECTED, f"{provider} error: {response.status_code} - {response.text}")
            )

        except httpx.TimeoutException as e:
            logger.error(f"{provider} timed out: {e}")
            return NotificationResult(
                success=False,
                channel=channel,
                error=failure(TIMEOUT, f"{provider} did not respond in time")
            )
        except Exception as e:
            logger.error(f"{provider} send failed: {e}")
            return NotificationResult(
                success=False,
                channel=channel,
                error=failure(DELIVERY_ERROR, str(e))
            )


# Global notification service instance
notification_service = NotificationService()
