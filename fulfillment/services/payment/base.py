"""
Payment Service Abstract Base Class

Defines the interface contract for all payment provider implementations.
Both MockPaymentService and StripePaymentService must implement these methods,
ensuring consistent behavior regardless of which provider is active.

Design Pattern: Strategy Pattern
    - Allows runtime switching between payment providers
    - New providers can be added without modifying existing code
    - Facilitates testing with mock implementations

All amounts are integer minor units (Rappen / cents), the unit Stripe uses.

Version: 1.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

# Provider-side intent statuses (Stripe vocabulary)
INTENT_REQUIRES_PAYMENT_METHOD = "requires_payment_method"
INTENT_REQUIRES_CONFIRMATION = "requires_confirmation"
INTENT_SUCCEEDED = "succeeded"
INTENT_CANCELED = "canceled"

# Statuses in which the amount and fee may still change
MUTABLE_INTENT_STATUSES = (INTENT_REQUIRES_PAYMENT_METHOD, INTENT_REQUIRES_CONFIRMATION)

# Refund reasons the provider accepts; anything else maps to requested_by_customer
PROVIDER_REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")


@dataclass
class PaymentResult:
    """
    Standardized result from a payment intent operation.

    Both Mock and Real implementations return this same structure,
    allowing the rest of the application to work identically
    regardless of which provider is active.

    Attributes:
        success: Whether the provider call succeeded
        payment_intent_id: Unique identifier for the intent (Stripe format: pi_xxx)
        status: Provider-side intent status
        amount: Intent amount in minor units
        application_fee: Platform fee retained on the intent
        currency: Currency code (e.g., "chf")
        client_secret: Secret the client uses to confirm the payment
        error_message: Error description if the call failed
        error_code: Machine-readable error code
        retryable: Whether the failure is transient
        response_time_ms: Time taken by the provider
        metadata: Additional data from the payment provider
    """
    success: bool
    payment_intent_id: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[int] = None
    application_fee: Optional[int] = None
    currency: str = "chf"
    client_secret: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False
    response_time_ms: float = 0.0
    metadata: Optional[dict] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "payment_intent_id": self.payment_intent_id,
            "status": self.status,
            "amount": self.amount,
            "application_fee": self.application_fee,
            "currency": self.currency,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "retryable": self.retryable,
            "response_time_ms": self.response_time_ms,
            "metadata": self.metadata,
        }


@dataclass
class RefundResult:
    """
    Standardized result from refund processing.

    Attributes:
        success: Whether the refund was accepted
        refund_id: Unique identifier for the refund
        amount: Amount refunded in minor units
        status: Refund status (pending, succeeded, failed)
        error_message: Error description if refund failed
        error_code: Machine-readable error code
        retryable: Whether the failure is transient
    """
    success: bool
    refund_id: Optional[str] = None
    amount: Optional[int] = None
    status: str = "pending"
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    retryable: bool = False


def provider_refund_reason(reason: Optional[str]) -> str:
    """Map a business refund reason onto the provider's fixed vocabulary."""
    return reason if reason in PROVIDER_REFUND_REASONS else "requested_by_customer"


class BasePaymentService(ABC):
    """
    Abstract base class for payment providers.

    All implementations (Mock, Stripe, etc.) must inherit from this class
    and implement all abstract methods. Failures are reported through the
    result objects, never raised; the orchestration adapter turns them into
    domain errors.

    Example:
        >>> service = get_payment_service()  # Returns Mock or Stripe
        >>> result = await service.create_payment_intent(
        ...     amount=2870,
        ...     application_fee=86,
        ...     metadata={"order_id": "ord_..."},
        ... )
        >>> if result.success:
        ...     print(f"Intent: {result.payment_intent_id}")
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the name of the payment provider (e.g., "mock", "stripe")."""
        pass

    @abstractmethod
    async def create_payment_intent(
        self,
        amount: int,
        currency: str = "chf",
        application_fee: int = 0,
        destination_account: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        """
        Create a payment intent for client-side confirmation.

        Args:
            amount: Amount in minor units, tip included
            currency: Currency code
            application_fee: Platform fee retained on the charge
            destination_account: Connected account receiving the funds
            metadata: Additional data to attach (order id, fee breakdown)
        """
        pass

    @abstractmethod
    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentResult:
        """Fetch the current state of an intent."""
        pass

    @abstractmethod
    async def update_payment_intent(
        self,
        payment_intent_id: str,
        amount: int,
        application_fee: int,
        metadata: Optional[dict] = None,
    ) -> PaymentResult:
        """Change the amount and fee of an intent that has not been confirmed yet."""
        pass

    @abstractmethod
    async def cancel_payment_intent(self, payment_intent_id: str) -> PaymentResult:
        """Cancel an intent that was never captured."""
        pass

    @abstractmethod
    async def refund_payment(
        self,
        payment_intent_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a captured payment.

        Args:
            payment_intent_id: The payment to refund
            amount: Amount to refund (None = everything still refundable)
            reason: Business reason; mapped to the provider's vocabulary
        """
        pass

    @abstractmethod
    async def verify_webhook(
        self,
        payload: bytes,
        signature: str,
    ) -> Optional[dict]:
        """
        Verify and parse a webhook from the payment provider.

        Returns:
            dict: Parsed webhook event if valid, None if invalid
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Verify connectivity to the payment provider."""
        pass
