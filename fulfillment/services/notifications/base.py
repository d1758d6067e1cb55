"""
Notification Service Abstract Base Class

Defines the dispatcher interface used by the fulfillment services:
SMS to customers, email receipts and push messages to truck devices.
Supports both Mock (development) and Real (production) implementations.

Only triggers live in the services; transport details stay here.

Version: 1.0.0
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


class NotificationChannel(str, enum.Enum):
    SMS = "sms"
    EMAIL = "email"
    PUSH = "push"


class NotificationPriority(str, enum.Enum):
    NORMAL = "normal"
    HIGH = "high"


@dataclass
class NotificationResult:
    """Result from sending a notification."""
    success: bool
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    provider: str = "unknown"


class BaseNotificationService(ABC):
    """Abstract base class for notification services."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def send_sms(
        self,
        to_phone: str,
        message: str,
    ) -> NotificationResult:
        """Send an SMS message."""
        pass

    @abstractmethod
    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        """Send an email."""
        pass

    @abstractmethod
    async def send_push(
        self,
        recipient: str,
        title: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        data: Optional[dict] = None,
    ) -> NotificationResult:
        """Send a push message to a device group (tenant id or customer topic)."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check service connectivity."""
        pass

    async def notify(
        self,
        recipient: str,
        channel: NotificationChannel,
        title: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        data: Optional[dict] = None,
    ) -> NotificationResult:
        """Route a notification to the transport for its channel."""
        channel = NotificationChannel(channel)
        if channel is NotificationChannel.SMS:
            return await self.send_sms(recipient, f"{title}: {body}")
        if channel is NotificationChannel.EMAIL:
            return await self.send_email(recipient, title, f"<p>{body}</p>", body_text=body)
        return await self.send_push(recipient, title, body, NotificationPriority(priority), data)

    async def send_order_confirmation(
        self,
        order_number: int,
        customer_name: str,
        customer_phone: str,
        customer_email: Optional[str],
        total: int,
        estimated_minutes: int,
        currency: str = "chf",
    ) -> NotificationResult:
        """Send order confirmation via SMS and, when known, email."""
        message = (
            f"Hi {customer_name}! Your order #{order_number} has been received.\n"
            f"Total: {currency.upper()} {total / 100:.2f}\n"
            f"Estimated time: {estimated_minutes} minutes"
        )
        sms_result = await self.send_sms(customer_phone, message)

        email_result = None
        if customer_email:
            email_result = await self.send_email(
                to_email=customer_email,
                subject=f"Order #{order_number} received",
                body_html=f"<h1>Order received</h1><p>{message}</p>",
                body_text=message,
            )

        return NotificationResult(
            success=sms_result.success or bool(email_result and email_result.success),
            message_id=sms_result.message_id,
            error_message=sms_result.error_message,
            provider=self.provider_name,
        )
