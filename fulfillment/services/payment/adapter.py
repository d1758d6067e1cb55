"""
Payment Orchestration Adapter

Sits between the order aggregate and the payment provider. It owns the
platform's view of each intent (PaymentRecord) and the money rules:

    - Platform fee: round((amount + tip) * platform %), where platform % is
      0 during the tenant's trial window. The tip-specific fee percentage is
      recorded on the record and in the intent metadata.
    - Tips after creation are allowed only while the intent can still change
      (not confirmed, not cancelled); the tip fee share is added to the fee.
    - Refunds never exceed what was captured. The refunded amount is reserved
      on the record with a compare-and-swap before the provider is called and
      released again if the provider fails, so concurrent refunds cannot
      over-refund.

Usage:
    payments = PaymentOrchestrator(session_factory, settings, get_payment_service())
    intent_id = await payments.create_intent(tenant, order_id, amount=2870, tip=200)
    await payments.add_tip(intent_id, 100)
    refund_id = await payments.refund(intent_id, reason="requested_by_customer")
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.clock import ensure_aware, utcnow
from fulfillment.core.config import Settings
from fulfillment.core.exceptions import (
    OrderPersistenceError,
    OrderValidationError,
    PaymentContentionError,
    PaymentNotCapturedError,
    PaymentProviderError,
    PaymentRecordNotFoundError,
    RefundExceedsCapturedError,
    TipNotAllowedError,
)
from fulfillment.core.retry import StaleDataError, with_optimistic_retry
from fulfillment.models import PaymentRecord, PaymentRefund, PaymentStatus, Tenant
from fulfillment.services.payment.base import MUTABLE_INTENT_STATUSES, BasePaymentService
from fulfillment.services.pricing import percent_of, platform_fee

logger = logging.getLogger(__name__)

CAPTURED_STATUSES = (PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED)
TIPPABLE_STATUSES = (PaymentStatus.REQUIRES_PAYMENT, PaymentStatus.FAILED)


class PaymentOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        provider: BasePaymentService,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.provider = provider

    # =========================================================================
    # FEES
    # =========================================================================

    def trial_ends_at(self, tenant: Tenant) -> Optional[datetime]:
        if tenant.trial_ends_at is not None:
            return ensure_aware(tenant.trial_ends_at)
        if tenant.created_at is not None:
            return ensure_aware(tenant.created_at) + timedelta(days=self.settings.trial_days)
        return None

    def in_trial(self, tenant: Tenant, now: Optional[datetime] = None) -> bool:
        ends = self.trial_ends_at(tenant)
        return ends is not None and (now or utcnow()) < ends

    def fee_percentages(self, tenant: Tenant, now: Optional[datetime] = None) -> tuple[float, float]:
        """(platform %, tip %) that apply to the tenant right now."""
        if self.in_trial(tenant, now):
            return 0.0, 0.0
        return self.settings.platform_fee_percent, self.settings.tip_fee_percent

    # =========================================================================
    # INTENTS
    # =========================================================================

    async def create_intent(self, tenant: Tenant, order_id: str, amount: int, tip: int = 0) -> str:
        """Create the provider intent for an order and its Payment Record."""
        platform_percent, tip_percent = self.fee_percentages(tenant)
        fee = platform_fee(amount, tip, platform_percent)
        metadata = {
            "order_id": order_id,
            "tenant_id": tenant.id,
            "tip": tip,
            "platform_fee_percent": platform_percent,
            "tip_fee_percent": tip_percent,
            "tip_platform_fee": percent_of(tip, tip_percent),
        }

        result = await self.provider.create_payment_intent(
            amount=amount + tip,
            currency=self.settings.stripe_currency,
            application_fee=fee,
            destination_account=tenant.stripe_account_id,
            metadata=metadata,
        )
        if not result.success:
            raise PaymentProviderError(
                result.error_message or "Payment intent could not be created",
                error_code=result.error_code,
                retryable=result.retryable,
            )

        record = PaymentRecord(
            intent_id=result.payment_intent_id,
            tenant_id=tenant.id,
            order_id=order_id,
            amount=amount + tip,
            tip=tip,
            platform_fee=fee,
            tip_fee_percent=tip_percent,
            status=PaymentStatus.REQUIRES_PAYMENT,
            currency=self.settings.stripe_currency,
            version=1,
            created_at=utcnow(),
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(record)
        except SQLAlchemyError as exc:
            logger.error("Payment record for %s not stored, cancelling intent %s", order_id, record.intent_id)
            await self.provider.cancel_payment_intent(record.intent_id)
            raise OrderPersistenceError(f"Payment record for order {order_id} could not be stored") from exc

        logger.info(
            "Intent %s for order %s: amount=%d fee=%d (%.1f%%)",
            record.intent_id, order_id, record.amount, fee, platform_percent,
        )
        return record.intent_id

    async def get_record(self, intent_id: str) -> PaymentRecord:
        async with self.session_factory() as session:
            record = await session.get(PaymentRecord, intent_id)
        if record is None:
            raise PaymentRecordNotFoundError(f"No payment record for intent {intent_id}")
        return record

    async def find_record(self, intent_id: str) -> Optional[PaymentRecord]:
        async with self.session_factory() as session:
            return await session.get(PaymentRecord, intent_id)

    async def get_record_for_order(self, order_id: str) -> Optional[PaymentRecord]:
        async with self.session_factory() as session:
            result = await session.execute(select(PaymentRecord).where(PaymentRecord.order_id == order_id))
            return result.scalar_one_or_none()

    async def _compare_and_set(self, session: AsyncSession, record: PaymentRecord, **values) -> None:
        result = await session.execute(
            update(PaymentRecord)
            .where(
                PaymentRecord.intent_id == record.intent_id,
                PaymentRecord.version == record.version,
            )
            .values(version=record.version + 1, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleDataError(f"payment record {record.intent_id} changed concurrently")

    # =========================================================================
    # TIPS
    # =========================================================================

    async def add_tip(self, intent_id: str, tip_amount: int) -> bool:
        """Add a tip to an intent that has not been settled yet."""
        if tip_amount <= 0:
            raise OrderValidationError(["Tip must be a positive amount"])

        record = await self.get_record(intent_id)
        if record.status not in TIPPABLE_STATUSES:
            raise TipNotAllowedError(f"Intent {intent_id} is {record.status.value}; tips are closed")

        state = await self.provider.retrieve_payment_intent(intent_id)
        if not state.success:
            raise PaymentProviderError(
                state.error_message or "Payment intent could not be read",
                error_code=state.error_code,
                retryable=state.retryable,
            )
        if state.status not in MUTABLE_INTENT_STATUSES:
            raise TipNotAllowedError(f"Intent {intent_id} is {state.status} at the provider; tips are closed")

        before = await self._book_tip(intent_id, tip_amount)
        tip_fee = percent_of(tip_amount, before.tip_fee_percent)
        result = await self.provider.update_payment_intent(
            intent_id,
            amount=before.amount + tip_amount,
            application_fee=before.platform_fee + tip_fee,
            metadata={
                "tip": before.tip + tip_amount,
                "tip_platform_fee": percent_of(before.tip + tip_amount, before.tip_fee_percent),
            },
        )
        if not result.success:
            await self._unbook_tip(intent_id, tip_amount)
            if result.error_code == "payment_intent_unexpected_state":
                raise TipNotAllowedError(f"Intent {intent_id} can no longer be changed")
            raise PaymentProviderError(
                result.error_message or "Tip could not be added",
                error_code=result.error_code,
                retryable=result.retryable,
            )

        logger.info("Tip of %d added to %s (fee +%d)", tip_amount, intent_id, tip_fee)
        return True

    @with_optimistic_retry(PaymentContentionError)
    async def _book_tip(self, intent_id: str, tip_amount: int) -> PaymentRecord:
        async with self.session_factory() as session:
            async with session.begin():
                record = await session.get(PaymentRecord, intent_id)
                if record.status not in TIPPABLE_STATUSES:
                    raise TipNotAllowedError(f"Intent {intent_id} is {record.status.value}; tips are closed")
                await self._compare_and_set(
                    session, record,
                    amount=record.amount + tip_amount,
                    tip=record.tip + tip_amount,
                    platform_fee=record.platform_fee + percent_of(tip_amount, record.tip_fee_percent),
                )
                return record

    @with_optimistic_retry(PaymentContentionError)
    async def _unbook_tip(self, intent_id: str, tip_amount: int) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                record = await session.get(PaymentRecord, intent_id)
                await self._compare_and_set(
                    session, record,
                    amount=record.amount - tip_amount,
                    tip=record.tip - tip_amount,
                    platform_fee=record.platform_fee - percent_of(tip_amount, record.tip_fee_percent),
                )

    # =========================================================================
    # REFUNDS
    # =========================================================================

    async def refund(self, intent_id: str, amount: Optional[int] = None, reason: Optional[str] = None) -> str:
        """
        Refund captured money.

        Without ``amount`` everything still refundable is returned.
        Returns the provider's refund id.
        """
        if amount is not None and amount <= 0:
            raise OrderValidationError(["Refund amount must be positive"])

        record, reserved = await self._reserve_refund(intent_id, amount)

        result = await self.provider.refund_payment(intent_id, amount=reserved, reason=reason)
        if not result.success:
            await self._release_refund(intent_id, reserved)
            raise PaymentProviderError(
                result.error_message or "Refund failed",
                error_code=result.error_code,
                retryable=result.retryable,
            )

        async with self.session_factory() as session:
            async with session.begin():
                session.add(PaymentRefund(
                    id=result.refund_id or f"re_{uuid.uuid4().hex}",
                    intent_id=intent_id,
                    tenant_id=record.tenant_id,
                    amount=reserved,
                    reason=reason,
                    created_at=utcnow(),
                ))

        logger.info("Refunded %d on %s (%s): %s", reserved, intent_id, reason, result.refund_id)
        return result.refund_id

    @with_optimistic_retry(PaymentContentionError)
    async def _reserve_refund(self, intent_id: str, amount: Optional[int]) -> tuple[PaymentRecord, int]:
        async with self.session_factory() as session:
            async with session.begin():
                record = await session.get(PaymentRecord, intent_id)
                if record is None:
                    raise PaymentRecordNotFoundError(f"No payment record for intent {intent_id}")
                if record.status not in CAPTURED_STATUSES:
                    raise PaymentNotCapturedError(
                        f"Intent {intent_id} is {record.status.value}; nothing was captured"
                    )

                remaining = record.captured_amount - record.refunded_amount
                requested = remaining if amount is None else amount
                if requested <= 0 or requested > remaining:
                    raise RefundExceedsCapturedError(
                        f"Refund of {requested} exceeds the refundable {remaining} on {intent_id}",
                        detail={"requested": requested, "refundable": remaining},
                    )

                refunded = record.refunded_amount + requested
                await self._compare_and_set(
                    session, record,
                    refunded_amount=refunded,
                    status=(PaymentStatus.REFUNDED if refunded == record.captured_amount
                            else PaymentStatus.PARTIALLY_REFUNDED),
                )
                return record, requested

    @with_optimistic_retry(PaymentContentionError)
    async def _release_refund(self, intent_id: str, amount: int) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                record = await session.get(PaymentRecord, intent_id)
                refunded = record.refunded_amount - amount
                await self._compare_and_set(
                    session, record,
                    refunded_amount=refunded,
                    status=PaymentStatus.PARTIALLY_REFUNDED if refunded else PaymentStatus.SUCCEEDED,
                )
        logger.warning("Released refund reservation of %d on %s after provider failure", amount, intent_id)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def cancel_intent(self, intent_id: str) -> bool:
        """Cancel an intent that was never captured. Returns False if there is nothing to cancel."""
        record = await self.get_record(intent_id)
        if record.status not in TIPPABLE_STATUSES:
            return False

        result = await self.provider.cancel_payment_intent(intent_id)
        if not result.success:
            raise PaymentProviderError(
                result.error_message or "Intent could not be cancelled",
                error_code=result.error_code,
                retryable=result.retryable,
            )
        await self._set_status(intent_id, PaymentStatus.CANCELLED, allowed=TIPPABLE_STATUSES)
        logger.info("Cancelled intent %s", intent_id)
        return True

    async def mark_succeeded(self, intent_id: str, amount_received: Optional[int] = None) -> PaymentRecord:
        """Record a capture reported by the provider. Repeated events are ignored."""
        return await self._mark_captured(intent_id, amount_received)

    @with_optimistic_retry(PaymentContentionError)
    async def _mark_captured(self, intent_id: str, amount_received: Optional[int]) -> PaymentRecord:
        async with self.session_factory() as session:
            async with session.begin():
                record = await session.get(PaymentRecord, intent_id)
                if record is None:
                    raise PaymentRecordNotFoundError(f"No payment record for intent {intent_id}")
                if record.status in CAPTURED_STATUSES:
                    return record
                captured = record.amount if amount_received is None else amount_received
                await self._compare_and_set(
                    session, record, status=PaymentStatus.SUCCEEDED, captured_amount=captured,
                )
        logger.info("Captured %d on %s", captured, intent_id)
        return await self.get_record(intent_id)

    async def mark_failed(self, intent_id: str) -> PaymentRecord:
        """Record a failed payment attempt; the intent stays open for another try."""
        return await self._set_status(intent_id, PaymentStatus.FAILED, allowed=(PaymentStatus.REQUIRES_PAYMENT,))

    @with_optimistic_retry(PaymentContentionError)
    async def _set_status(self, intent_id: str, status: PaymentStatus, allowed: tuple) -> PaymentRecord:
        async with self.session_factory() as session:
            async with session.begin():
                record = await session.get(PaymentRecord, intent_id)
                if record is None:
                    raise PaymentRecordNotFoundError(f"No payment record for intent {intent_id}")
                if record.status not in allowed:
                    return record
                await self._compare_and_set(session, record, status=status)
        return await self.get_record(intent_id)
