"""
Stripe Payment Service Implementation

Production implementation using the official Stripe Python SDK.
Used when ENV_MODE=production or ENV_MODE=staging.

Payments are Stripe Connect destination charges: the funds go to the
tenant's connected account and the platform keeps ``application_fee_amount``.

Requirements:
    - STRIPE_SECRET_KEY must be set in environment
    - STRIPE_WEBHOOK_SECRET for webhook verification

Security Notes:
    - Never log full card numbers or CVCs
    - Always verify webhook signatures
    - Use idempotency keys for retries

Version: 1.0.0
"""

import json
import logging
from datetime import datetime
from typing import Optional

import stripe

from fulfillment.core.config import Settings, get_settings
from fulfillment.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    RefundResult,
    provider_refund_reason,
)

logger = logging.getLogger(__name__)


class StripePaymentService(BasePaymentService):
    """
    Production Stripe payment service implementation.

    Configuration:
        Requires STRIPE_SECRET_KEY environment variable.
        Optionally uses STRIPE_WEBHOOK_SECRET for webhook verification.
    """

    def __init__(self, settings: Optional[Settings] = None):
        """
        Initialize Stripe with API key from settings.

        Raises:
            ValueError: If STRIPE_SECRET_KEY is not configured
        """
        settings = settings or get_settings()

        if not settings.stripe_secret_key:
            raise ValueError(
                "STRIPE_SECRET_KEY is required for production mode. "
                "Set it in your .env file or environment variables."
            )

        # Configure Stripe SDK
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = "2023-10-16"  # Pin API version for stability

        self._webhook_secret = settings.stripe_webhook_secret
        self._currency = settings.stripe_currency

        logger.info(
            f"StripePaymentService initialized "
            f"(api_version={stripe.api_version})"
        )

    @property
    def provider_name(self) -> str:
        """Return the provider name."""
        return "stripe"

    @staticmethod
    def _elapsed_ms(start_time: datetime) -> float:
        return (datetime.now() - start_time).total_seconds() * 1000

    def _intent_result(self, intent, start_time: datetime) -> PaymentResult:
        return PaymentResult(
            success=True,
            payment_intent_id=intent.id,
            status=intent.status,
            amount=intent.amount,
            application_fee=getattr(intent, "application_fee_amount", None) or 0,
            currency=intent.currency,
            client_secret=getattr(intent, "client_secret", None),
            response_time_ms=self._elapsed_ms(start_time),
            metadata=dict(getattr(intent, "metadata", None) or {}),
        )

    def _error_result(self, e: Exception, start_time: datetime, action: str) -> PaymentResult:
        """Translate a Stripe exception into a failed PaymentResult."""
        elapsed_ms = self._elapsed_ms(start_time)

        if isinstance(e, stripe.CardError):
            # Card was declined
            logger.warning(f"Stripe: Card declined during {action} - {e.code}: {e.user_message}")
            return PaymentResult(
                success=False,
                error_message=e.user_message,
                error_code=e.code,
                response_time_ms=elapsed_ms,
            )

        if isinstance(e, stripe.InvalidRequestError):
            # Invalid parameters or unexpected intent state
            logger.error(f"Stripe: Invalid request during {action} - {e}")
            return PaymentResult(
                success=False,
                error_message=str(e),
                error_code=e.code or "invalid_request",
                response_time_ms=elapsed_ms,
            )

        if isinstance(e, stripe.AuthenticationError):
            # API key issues
            logger.critical(f"Stripe: Authentication failed - {e}")
            return PaymentResult(
                success=False,
                error_message="Payment service configuration error",
                error_code="authentication_error",
            )

        if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError)):
            # Network issues
            logger.error(f"Stripe: Connection error during {action} - {e}")
            return PaymentResult(
                success=False,
                error_message="Payment service temporarily unavailable",
                error_code="connection_error",
                retryable=True,
                response_time_ms=elapsed_ms,
            )

        # Generic Stripe error
        logger.error(f"Stripe: Error during {action} - {e}")
        return PaymentResult(
            success=False,
            error_message="Payment processing error",
            error_code="stripe_error",
            response_time_ms=elapsed_ms,
        )

    async def create_payment_intent(
        self,
        amount: int,
        currency: str = "chf",
        application_fee: int = 0,
        destination_account: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        """
        Create a PaymentIntent for client-side confirmation.

        Returns a client_secret that the frontend uses with Stripe.js
        to complete the payment.
        """
        start_time = datetime.now()

        if amount <= 0:
            return PaymentResult(
                success=False,
                error_message="Amount must be greater than 0",
                error_code="invalid_amount",
            )

        params = {
            "amount": amount,
            "currency": currency or self._currency,
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
            "automatic_payment_methods": {"enabled": True},
        }
        if destination_account:
            params["transfer_data"] = {"destination": destination_account}
            params["application_fee_amount"] = application_fee

        idempotency_key = None
        if metadata and metadata.get("order_id"):
            idempotency_key = f"intent-{metadata['order_id']}"

        try:
            intent = stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params)
            logger.info(f"Stripe: PaymentIntent created - {intent.id} - status={intent.status}")
            return self._intent_result(intent, start_time)

        except stripe.StripeError as e:
            return self._error_result(e, start_time, "create")

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentResult:
        start_time = datetime.now()
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
            return self._intent_result(intent, start_time)
        except stripe.StripeError as e:
            return self._error_result(e, start_time, "retrieve")

    async def update_payment_intent(
        self,
        payment_intent_id: str,
        amount: int,
        application_fee: int,
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        start_time = datetime.now()
        params = {
            "amount": amount,
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
        }
        try:
            current = stripe.PaymentIntent.retrieve(payment_intent_id)
            if getattr(current, "transfer_data", None):
                params["application_fee_amount"] = application_fee
            intent = stripe.PaymentIntent.modify(payment_intent_id, **params)
            logger.info(f"Stripe: PaymentIntent updated - {intent.id} - amount={intent.amount}")
            return self._intent_result(intent, start_time)
        except stripe.StripeError as e:
            return self._error_result(e, start_time, "update")

    async def cancel_payment_intent(self, payment_intent_id: str) -> PaymentResult:
        start_time = datetime.now()
        try:
            intent = stripe.PaymentIntent.cancel(payment_intent_id)
            logger.info(f"Stripe: PaymentIntent canceled - {intent.id}")
            return self._intent_result(intent, start_time)
        except stripe.StripeError as e:
            return self._error_result(e, start_time, "cancel")

    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a payment through Stripe.

        Args:
            payment_intent_id: The PaymentIntent to refund
            amount: Partial refund amount (None = full refund)
            reason: Business reason, kept in metadata and mapped to Stripe's codes
        """
        try:
            refund_params = {
                "payment_intent": payment_intent_id,
                "reason": provider_refund_reason(reason),
                "metadata": {"reason": reason or ""},
            }

            if amount is not None:
                refund_params["amount"] = amount

            refund = stripe.Refund.create(**refund_params)

            logger.info(
                f"Stripe: Refund processed - {refund.id} - "
                f"status={refund.status}"
            )

            return RefundResult(
                success=True,
                refund_id=refund.id,
                amount=refund.amount,
                status=refund.status,
            )

        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.error(f"Stripe: Refund connection error - {e}")
            return RefundResult(
                success=False,
                error_message=str(e),
                error_code="connection_error",
                retryable=True,
            )

        except stripe.StripeError as e:
            logger.error(f"Stripe: Refund failed - {e}")
            return RefundResult(
                success=False,
                error_message=str(e),
                error_code=getattr(e, "code", None) or "stripe_error",
            )

    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[dict]:
        """
        Verify and parse a Stripe webhook event.

        SECURITY: Always verify webhook signatures in production
        to prevent spoofed events.
        """
        if not self._webhook_secret:
            logger.warning(
                "Stripe: Webhook secret not configured, skipping verification"
            )
            try:
                return json.loads(payload)
            except json.JSONDecodeError:
                return None

        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                self._webhook_secret,
            )

            logger.debug(f"Stripe: Webhook verified - {event['type']}")
            return event

        except stripe.SignatureVerificationError as e:
            logger.warning(f"Stripe: Webhook signature invalid - {e}")
            return None

        except ValueError as e:
            logger.error(f"Stripe: Webhook payload invalid - {e}")
            return None

    async def health_check(self) -> bool:
        """
        Verify Stripe API connectivity.

        Makes a lightweight API call to verify credentials and connectivity.
        """
        try:
            stripe.Account.retrieve()
            logger.debug("Stripe: Health check passed")
            return True

        except stripe.StripeError as e:
            logger.error(f"Stripe: Health check failed - {e}")
            return False
