"""
Mock Payment Service Implementation

Simulates Stripe-like payment intents without making real API calls.
Used in development mode (ENV_MODE=development) and in tests to:
    - Run the complete order flow locally
    - Exercise tips, refunds and cancellations deterministically
    - Develop without internet connectivity

Behavior:
    - Keeps intents in memory so later calls see earlier ones
    - Simulates response times (configurable, 0 for tests)
    - Randomly fails a share of calls (configurable)
    - Generates Stripe-like IDs (pi_xxx, re_xxx)
    - ``confirm_payment_intent`` plays the customer paying and returns the
      webhook event the real provider would send

Version: 1.0.0
"""

import asyncio
import json
import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from fulfillment.services.payment.base import (
    INTENT_CANCELED,
    INTENT_REQUIRES_PAYMENT_METHOD,
    INTENT_SUCCEEDED,
    MUTABLE_INTENT_STATUSES,
    BasePaymentService,
    PaymentResult,
    RefundResult,
    provider_refund_reason,
)

logger = logging.getLogger(__name__)


@dataclass
class MockIntent:
    id: str
    amount: int
    currency: str
    application_fee: int
    destination_account: Optional[str]
    metadata: dict
    status: str = INTENT_REQUIRES_PAYMENT_METHOD
    amount_refunded: int = 0
    refunds: list = field(default_factory=list)


class MockPaymentService(BasePaymentService):
    """
    Mock implementation of the payment provider.

    Attributes:
        failure_rate: Probability of a simulated provider failure (0.0-1.0)
        min_latency: Minimum simulated response time in seconds
        max_latency: Maximum simulated response time in seconds
        intents: In-memory intents keyed by id
    """

    # Simulated failure reasons (mimics real Stripe error codes)
    DECLINE_REASONS = [
        ("card_declined", "Your card was declined."),
        ("processing_error", "An error occurred while processing your card."),
        ("rate_limit", "Too many requests hit the API too quickly."),
    ]

    def __init__(
        self,
        failure_rate: float = 0.10,
        min_latency: float = 0.2,
        max_latency: float = 0.8,
    ):
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self.intents: dict[str, MockIntent] = {}

        logger.info(
            f"MockPaymentService initialized "
            f"(failure_rate={failure_rate:.0%}, "
            f"latency={min_latency}-{max_latency}s)"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "mock"

    def _generate_payment_intent_id(self) -> str:
        """Generate a Stripe-like payment intent ID."""
        return f"pi_mock_{uuid.uuid4().hex[:24]}"

    def _generate_refund_id(self) -> str:
        """Generate a Stripe-like refund ID."""
        return f"re_mock_{uuid.uuid4().hex[:24]}"

    async def _simulate_latency(self) -> float:
        """
        Simulate network latency.

        Returns:
            float: Actual latency in milliseconds
        """
        if self.max_latency <= 0:
            return 0.0
        latency = random.uniform(self.min_latency, self.max_latency)
        await asyncio.sleep(latency)
        return latency * 1000

    def _should_fail(self) -> bool:
        """Determine if this request should simulate a failure."""
        return random.random() < self.failure_rate

    def _simulated_failure(self, latency_ms: float) -> PaymentResult:
        error_code, error_message = random.choice(self.DECLINE_REASONS)
        logger.debug(f"Mock: Provider call failed - {error_code}")
        return PaymentResult(
            success=False,
            error_message=error_message,
            error_code=error_code,
            retryable=error_code != "card_declined",
            response_time_ms=latency_ms,
        )

    def _result(self, intent: MockIntent, latency_ms: float = 0.0) -> PaymentResult:
        return PaymentResult(
            success=True,
            payment_intent_id=intent.id,
            status=intent.status,
            amount=intent.amount,
            application_fee=intent.application_fee,
            currency=intent.currency,
            client_secret=f"{intent.id}_secret_mock",
            response_time_ms=latency_ms,
            metadata=dict(intent.metadata, mock=True),
        )

    def _unknown(self, payment_intent_id: str) -> PaymentResult:
        return PaymentResult(
            success=False,
            payment_intent_id=payment_intent_id,
            error_message="No such payment_intent",
            error_code="resource_missing",
        )

    async def create_payment_intent(
        self,
        amount: int,
        currency: str = "chf",
        application_fee: int = 0,
        destination_account: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        """Simulate creating a payment intent."""
        latency_ms = await self._simulate_latency()

        if amount <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
                response_time_ms=latency_ms,
            )

        if self._should_fail():
            return self._simulated_failure(latency_ms)

        intent = MockIntent(
            id=self._generate_payment_intent_id(),
            amount=amount,
            currency=currency,
            application_fee=application_fee,
            destination_account=destination_account,
            metadata=dict(metadata or {}),
        )
        self.intents[intent.id] = intent

        logger.info(f"Mock: Created payment intent {intent.id} - {amount} {currency.upper()}")
        return self._result(intent, latency_ms)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentResult:
        await self._simulate_latency()
        intent = self.intents.get(payment_intent_id)
        return self._result(intent) if intent else self._unknown(payment_intent_id)

    async def update_payment_intent(
        self,
        payment_intent_id: str,
        amount: int,
        application_fee: int,
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        latency_ms = await self._simulate_latency()
        intent = self.intents.get(payment_intent_id)
        if intent is None:
            return self._unknown(payment_intent_id)
        if intent.status not in MUTABLE_INTENT_STATUSES:
            return PaymentResult(
                success=False,
                payment_intent_id=payment_intent_id,
                status=intent.status,
                error_message=f"Intent in status {intent.status} cannot be updated",
                error_code="payment_intent_unexpected_state",
            )
        if self._should_fail():
            return self._simulated_failure(latency_ms)

        intent.amount = amount
        intent.application_fee = application_fee
        intent.metadata.update(metadata or {})
        logger.info(f"Mock: Updated payment intent {intent.id} - {amount}, fee {application_fee}")
        return self._result(intent, latency_ms)

    async def cancel_payment_intent(self, payment_intent_id: str) -> PaymentResult:
        latency_ms = await self._simulate_latency()
        intent = self.intents.get(payment_intent_id)
        if intent is None:
            return self._unknown(payment_intent_id)
        if intent.status == INTENT_SUCCEEDED:
            return PaymentResult(
                success=False,
                payment_intent_id=payment_intent_id,
                status=intent.status,
                error_message="A succeeded intent cannot be canceled",
                error_code="payment_intent_unexpected_state",
            )
        intent.status = INTENT_CANCELED
        logger.info(f"Mock: Canceled payment intent {intent.id}")
        return self._result(intent, latency_ms)

    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Simulate refunding a payment."""
        await self._simulate_latency()

        intent = self.intents.get(payment_intent_id)
        if intent is None:
            return RefundResult(
                success=False,
                error_message="Invalid payment intent ID",
                error_code="resource_missing",
            )
        if intent.status != INTENT_SUCCEEDED:
            return RefundResult(
                success=False,
                error_message="Only succeeded payments can be refunded",
                error_code="charge_not_captured",
            )

        refundable = intent.amount - intent.amount_refunded
        amount = refundable if amount is None else amount
        if amount <= 0 or amount > refundable:
            return RefundResult(
                success=False,
                error_message=f"Refund of {amount} exceeds refundable {refundable}",
                error_code="amount_too_large",
            )

        if self._should_fail():
            return RefundResult(
                success=False,
                error_message="An error occurred while processing the refund.",
                error_code="processing_error",
                retryable=True,
            )

        refund_id = self._generate_refund_id()
        intent.amount_refunded += amount
        intent.refunds.append({"id": refund_id, "amount": amount, "reason": provider_refund_reason(reason)})

        logger.info(f"Mock: Refund processed - {refund_id} - {amount}")
        return RefundResult(
            success=True,
            refund_id=refund_id,
            amount=amount,
            status="succeeded",
        )

    def confirm_payment_intent(self, payment_intent_id: str, succeed: bool = True) -> dict:
        """
        Play the customer confirming the payment.

        Returns the webhook event the provider would deliver.
        """
        intent = self.intents[payment_intent_id]
        if succeed:
            intent.status = INTENT_SUCCEEDED
            event_type = "payment_intent.succeeded"
        else:
            intent.status = INTENT_REQUIRES_PAYMENT_METHOD
            event_type = "payment_intent.payment_failed"

        return {
            "id": f"evt_mock_{uuid.uuid4().hex[:24]}",
            "type": event_type,
            "created": int(datetime.now().timestamp()),
            "data": {
                "object": {
                    "id": intent.id,
                    "object": "payment_intent",
                    "amount": intent.amount,
                    "amount_received": intent.amount if succeed else 0,
                    "currency": intent.currency,
                    "status": intent.status,
                    "metadata": intent.metadata,
                }
            },
        }

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[dict]:
        """
        Simulate webhook verification.

        In mock mode, always returns the parsed payload without
        cryptographic verification.
        """
        try:
            return json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("Mock: Invalid webhook payload")
            return None

    async def health_check(self) -> bool:
        """Mock health check always returns True."""
        logger.debug("Mock: Health check passed")
        return True
