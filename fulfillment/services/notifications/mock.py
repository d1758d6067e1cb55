"""
Mock Notification Service

Simulates SMS, email and push sending for development and tests.
No actual messages are sent - they are logged and kept in ``sent`` so
callers can inspect what would have gone out.

Version: 1.0.0
"""

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from typing import Optional

from fulfillment.core.clock import utcnow
from fulfillment.services.notifications.base import (
    BaseNotificationService,
    NotificationChannel,
    NotificationPriority,
    NotificationResult,
)

logger = logging.getLogger(__name__)


@dataclass
class SentNotification:
    channel: NotificationChannel
    recipient: str
    title: str
    body: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    data: dict = field(default_factory=dict)
    sent_at: object = field(default_factory=utcnow)


class MockNotificationService(BaseNotificationService):
    """Mock notification service for development."""

    def __init__(
        self,
        failure_rate: float = 0.05,
        min_latency: float = 0.1,
        max_latency: float = 0.3,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.sent: list[SentNotification] = []
        logger.info(f"MockNotificationService initialized (failure_rate={failure_rate:.0%})")

    @property
    def provider_name(self) -> str:
        return "mock"

    async def _simulate_latency(self) -> None:
        """Simulate network latency."""
        if self.max_latency > 0:
            await asyncio.sleep(random.uniform(self.min_latency, self.max_latency))

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    def _deliver(self, record: SentNotification, prefix: str) -> NotificationResult:
        if self._should_fail():
            logger.warning(f"Mock {record.channel.value} failed (simulated) to {record.recipient}")
            return NotificationResult(
                success=False,
                error_message=f"Simulated {record.channel.value} failure",
                provider="mock",
            )

        message_id = f"{prefix}_mock_{uuid.uuid4().hex[:12]}"
        self.sent.append(record)
        logger.info(
            f"Mock {record.channel.value} sent to {record.recipient}: "
            f"{record.title[:50]} (ID: {message_id})"
        )
        return NotificationResult(success=True, message_id=message_id, provider="mock")

    async def send_sms(
        self,
        to_phone: str,
        message: str,
    ) -> NotificationResult:
        """Simulate sending SMS."""
        await self._simulate_latency()
        return self._deliver(
            SentNotification(NotificationChannel.SMS, to_phone, message.split("\n")[0], message),
            "sms",
        )

    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        """Simulate sending email."""
        await self._simulate_latency()
        return self._deliver(
            SentNotification(NotificationChannel.EMAIL, to_email, subject, body_text or body_html),
            "email",
        )

    async def send_push(
        self,
        recipient: str,
        title: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        data: Optional[dict] = None,
    ) -> NotificationResult:
        """Simulate sending a push message."""
        await self._simulate_latency()
        return self._deliver(
            SentNotification(NotificationChannel.PUSH, recipient, title, body, priority, data or {}),
            "push",
        )

    def sent_to(self, recipient: str) -> list[SentNotification]:
        """Notifications delivered to one recipient, oldest first."""
        return [n for n in self.sent if n.recipient == recipient]

    def clear(self) -> None:
        self.sent.clear()

    async def health_check(self) -> bool:
        """Mock always returns healthy."""
        return True
