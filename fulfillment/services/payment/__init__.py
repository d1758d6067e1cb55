"""
Payment Service Factory

Provides a single entry point for obtaining a payment provider instance.
The factory pattern allows the rest of the application to remain agnostic
about which implementation is being used.

Usage:
    from fulfillment.services.payment import get_payment_service

    # Returns MockPaymentService or StripePaymentService based on ENV_MODE
    provider = get_payment_service()

Environment Switching:
    - ENV_MODE=development → MockPaymentService (no API calls)
    - ENV_MODE=staging → StripePaymentService (test keys)
    - ENV_MODE=production → StripePaymentService (live keys)

Version: 1.0.0
"""

import logging
from functools import lru_cache

from fulfillment.core.config import get_settings
from fulfillment.services.payment.base import (
    BasePaymentService,
    PaymentResult,
    RefundResult,
)
from fulfillment.services.payment.mock import MockPaymentService

logger = logging.getLogger(__name__)


@lru_cache()
def get_payment_service() -> BasePaymentService:
    """
    Get the configured payment provider instance.

    The instance is cached (singleton pattern) so the mock keeps its
    in-memory intents for the lifetime of the process.

    Raises:
        ValueError: If production mode but Stripe key not configured
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Payment Service: Using MockPaymentService (development mode)")
        return MockPaymentService(
            failure_rate=0.10,  # 10% simulated failures
            min_latency=0.2,
            max_latency=0.8,
        )
    else:
        from fulfillment.services.payment.stripe import StripePaymentService

        logger.info(
            f"Payment Service: Using StripePaymentService "
            f"({settings.env_mode.value} mode)"
        )
        return StripePaymentService(settings)


def reset_payment_service() -> None:
    """
    Clear the cached payment service instance.

    The next call to get_payment_service() will create a new instance.
    """
    get_payment_service.cache_clear()
    logger.debug("Payment service cache cleared")


__all__ = [
    "get_payment_service",
    "reset_payment_service",
    "BasePaymentService",
    "PaymentResult",
    "RefundResult",
    "MockPaymentService",
]
