"""
Real Notification Service

Production implementation using:
- Twilio for SMS
- SendGrid for Email
- An HTTP push gateway (httpx) for truck and customer devices

Version: 1.0.0
"""

import asyncio
import logging
from typing import Optional

import httpx
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient

from fulfillment.core.config import Settings, get_settings
from fulfillment.services.notifications.base import (
    BaseNotificationService,
    NotificationPriority,
    NotificationResult,
)

logger = logging.getLogger(__name__)


class RealNotificationService(BaseNotificationService):
    """Production notification service using Twilio, SendGrid and a push gateway."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.push_webhook_url = settings.push_webhook_url

        # Initialize Twilio
        if settings.twilio_account_sid and settings.twilio_auth_token:
            self.twilio_client = TwilioClient(
                settings.twilio_account_sid,
                settings.twilio_auth_token
            )
            self.twilio_from_number = settings.twilio_phone_number
        else:
            self.twilio_client = None
            logger.warning("Twilio credentials not configured")

        # Initialize SendGrid
        if settings.sendgrid_api_key:
            self.sendgrid_client = SendGridAPIClient(settings.sendgrid_api_key)
            self.sendgrid_from_email = settings.sendgrid_from_email
        else:
            self.sendgrid_client = None
            logger.warning("SendGrid credentials not configured")

        if not self.push_webhook_url:
            logger.warning("Push gateway URL not configured")

        logger.info("RealNotificationService initialized")

    @property
    def provider_name(self) -> str:
        return "real"

    async def send_sms(
        self,
        to_phone: str,
        message: str,
    ) -> NotificationResult:
        """Send SMS via Twilio."""
        if not self.twilio_client:
            return NotificationResult(
                success=False,
                error_message="Twilio not configured",
                provider="twilio"
            )

        try:
            # The Twilio client is synchronous
            result = await asyncio.to_thread(
                self.twilio_client.messages.create,
                body=message,
                from_=self.twilio_from_number,
                to=to_phone,
            )

            logger.info(f"SMS sent to {to_phone}: {result.sid}")

            return NotificationResult(
                success=True,
                message_id=result.sid,
                provider="twilio"
            )

        except TwilioException as e:
            logger.error(f"Twilio error: {e}")
            return NotificationResult(
                success=False,
                error_message=str(e),
                provider="twilio"
            )

    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        """Send email via SendGrid."""
        if not self.sendgrid_client:
            return NotificationResult(
                success=False,
                error_message="SendGrid not configured",
                provider="sendgrid"
            )

        try:
            message = Mail(
                from_email=self.sendgrid_from_email,
                to_emails=to_email,
                subject=subject,
                html_content=body_html,
                plain_text_content=body_text
            )

            response = await asyncio.to_thread(self.sendgrid_client.send, message)

            logger.info(f"Email sent to {to_email}: {response.status_code}")

            return NotificationResult(
                success=response.status_code in [200, 201, 202],
                message_id=response.headers.get('X-Message-Id'),
                provider="sendgrid"
            )

        except Exception as e:
            logger.error(f"SendGrid error: {e}")
            return NotificationResult(
                success=False,
                error_message=str(e),
                provider="sendgrid"
            )

    async def send_push(
        self,
        recipient: str,
        title: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        data: Optional[dict] = None,
    ) -> NotificationResult:
        """Publish a push message through the gateway."""
        if not self.push_webhook_url:
            return NotificationResult(
                success=False,
                error_message="Push gateway not configured",
                provider="push"
            )

        payload = {
            "recipient": recipient,
            "title": title,
            "body": body,
            "priority": NotificationPriority(priority).value,
            "data": data or {},
        }
        try:
            async with httpx.AsyncClient(timeout=3.0) as client:
                response = await client.post(self.push_webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Push gateway unreachable for {recipient}: {e}")
            return NotificationResult(
                success=False,
                error_message=str(e),
                provider="push"
            )

        return NotificationResult(
            success=True,
            message_id=response.headers.get("X-Message-Id"),
            provider="push"
        )

    async def health_check(self) -> bool:
        """Check that at least one transport is configured."""
        return bool(self.twilio_client or self.sendgrid_client or self.push_webhook_url)
