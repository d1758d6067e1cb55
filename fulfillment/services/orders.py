"""
Order Aggregate / State Machine

Owns the order lifecycle and is the only component that asks the inventory
ledger for reversals or the payment adapter for refunds.

    pending → confirmed → preparing → ready → completed
    pending | confirmed | preparing → cancelled

Creating an order runs, in order: validation, daily number, totals, one
logical inventory reservation, persistence as ``pending``, the payment
intent (card orders), escalation arming and the customer confirmation.
Anything after persistence is best effort and never undoes the order.
If persistence itself fails after stock was reserved, the reservation is
released; if that release fails too, a compensation record is written.

Status changes are a compare-and-swap on (status, version). Invalid moves
raise InvalidTransitionError and leave the order untouched.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.clock import ensure_aware, utcnow
from fulfillment.core.config import Settings
from fulfillment.core.exceptions import (
    FulfillmentError,
    InvalidTransitionError,
    OrderAlreadyExistsError,
    OrderContentionError,
    OrderNotFoundError,
    OrderPersistenceError,
    OrderValidationError,
    PaymentNotCapturedError,
    ProductUnavailableError,
    TenantClosedError,
    TipNotAllowedError,
)
from fulfillment.core.retry import StaleDataError, with_optimistic_retry
from fulfillment.models import Order, OrderStatus, PaymentRecord, PaymentStatus, ServiceType, Tenant
from fulfillment.services.catalog import ProductCatalog, TenantRegistry
from fulfillment.services.compensation import CompensationLog
from fulfillment.services.escalation import EscalationMonitor
from fulfillment.services.inventory import InventoryLedger
from fulfillment.services.notifications import (
    BaseNotificationService,
    NotificationChannel,
    NotificationPriority,
)
from fulfillment.services.payment.adapter import CAPTURED_STATUSES, TIPPABLE_STATUSES, PaymentOrchestrator
from fulfillment.services.pricing import calculate_totals, line_subtotal
from fulfillment.services.sequence import SequenceGenerator

logger = logging.getLogger(__name__)

MAX_LINE_QUANTITY = 99
PAYMENT_METHODS = ("card", "cash")

TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PREPARING, OrderStatus.CANCELLED},
    OrderStatus.PREPARING: {OrderStatus.READY, OrderStatus.CANCELLED},
    OrderStatus.READY: {OrderStatus.COMPLETED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}

STATUS_TIMESTAMPS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.PREPARING: "preparing_at",
    OrderStatus.READY: "ready_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

# Order.payment_status values
PAYMENT_UNPAID = "unpaid"
PAYMENT_NOT_REQUIRED = "not_required"
PAYMENT_INTENT_FAILED = "intent_failed"
PAYMENT_STATUS_FROM_RECORD = {
    PaymentStatus.REQUIRES_PAYMENT: "requires_payment",
    PaymentStatus.SUCCEEDED: "paid",
    PaymentStatus.FAILED: "failed",
    PaymentStatus.CANCELLED: "cancelled",
    PaymentStatus.PARTIALLY_REFUNDED: "partially_refunded",
    PaymentStatus.REFUNDED: "refunded",
}


@dataclass
class CartLine:
    product_id: str
    quantity: int
    modifiers: list[str] = field(default_factory=list)


@dataclass
class CustomerInfo:
    name: str
    phone: str
    email: Optional[str] = None


def is_terminal(status: OrderStatus) -> bool:
    return not TRANSITIONS[status]


class OrderService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        tenants: TenantRegistry,
        catalog: ProductCatalog,
        sequence: SequenceGenerator,
        inventory: InventoryLedger,
        payments: PaymentOrchestrator,
        escalation: EscalationMonitor,
        notifier: BaseNotificationService,
        compensations: Optional[CompensationLog] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.tenants = tenants
        self.catalog = catalog
        self.sequence = sequence
        self.inventory = inventory
        self.payments = payments
        self.escalation = escalation
        self.notifier = notifier
        self.compensations = compensations or CompensationLog(session_factory)

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create(
        self,
        tenant_id: str,
        items: list[CartLine],
        customer: CustomerInfo,
        *,
        service_type: ServiceType | str = ServiceType.PICKUP,
        location_id: Optional[str] = None,
        payment_method: str = "card",
        scheduled_for: Optional[datetime] = None,
        special_instructions: Optional[str] = None,
        discount: int = 0,
        tip: int = 0,
    ) -> Order:
        tenant = await self.tenants.get_tenant(tenant_id)
        if not tenant.is_open:
            raise TenantClosedError(f"{tenant.name} is not taking orders right now")

        errors = self._validate_request(
            tenant, items, customer, service_type, payment_method,
            scheduled_for, special_instructions, discount, tip,
        )
        if errors:
            raise OrderValidationError(errors)
        service_type = ServiceType(service_type)

        products = await self.catalog.get_products(tenant_id, [line.product_id for line in items])
        missing = sorted({line.product_id for line in items} - set(products))
        if missing:
            raise OrderValidationError([f"Unknown product: {product_id}" for product_id in missing])
        unavailable = sorted({p.id for p in products.values() if not p.available})
        if unavailable:
            raise ProductUnavailableError(
                f"Currently unavailable: {', '.join(unavailable)}",
                detail={"product_ids": unavailable},
            )

        default_rate = self._vat_rate(tenant, service_type)
        order_items = []
        for line in items:
            product = products[line.product_id]
            rate = product.vat_rate if product.vat_rate is not None else default_rate
            order_items.append({
                "product_id": product.id,
                "name": product.name,
                "quantity": line.quantity,
                "modifiers": list(line.modifiers),
                "unit_price": product.price,
                "line_subtotal": line_subtotal(product.price, line.quantity),
                "vat_rate": rate,
            })

        totals = calculate_totals(
            [(item["line_subtotal"], item["vat_rate"]) for item in order_items],
            default_vat_rate=default_rate,
            discount=discount,
            tip=tip,
        )
        if discount > totals.subtotal + totals.vat_amount:
            raise OrderValidationError(["Discount cannot exceed subtotal plus VAT"])

        order_id = f"ord_{uuid.uuid4().hex}"
        day = self.sequence.today()
        number = await self.sequence.next_number(tenant_id, day)

        await self.inventory.reserve(
            tenant_id, order_id, [(line.product_id, line.quantity) for line in items],
        )

        now = utcnow()
        order = Order(
            id=order_id,
            tenant_id=tenant_id,
            business_day=day,
            order_number=number,
            status=OrderStatus.PENDING,
            service_type=service_type,
            location_id=location_id or tenant.announced_location_id,
            customer_name=customer.name.strip(),
            customer_phone=customer.phone,
            customer_email=customer.email,
            items=order_items,
            special_instructions=special_instructions,
            scheduled_for=scheduled_for,
            estimated_minutes=self.settings.base_preparation_minutes + self.settings.minutes_per_item * len(items),
            payment_method=payment_method,
            payment_status=PAYMENT_UNPAID if payment_method == "cash" else "requires_payment",
            version=1,
            created_at=now,
            updated_at=now,
            **totals.as_dict(),
        )
        await self._persist_new_order(order)
        logger.info(
            "Order %s #%d created for %s: total=%d (%d items)",
            order_id, number, tenant_id, order.total, len(order_items),
        )

        if payment_method == "card":
            order = await self._open_payment(tenant, order)

        try:
            await self.escalation.arm(order)
        except Exception as exc:
            logger.warning("Escalation for %s not armed: %s", order_id, exc)

        try:
            await self.notifier.send_order_confirmation(
                order_number=order.order_number,
                customer_name=order.customer_name,
                customer_phone=order.customer_phone,
                customer_email=order.customer_email,
                total=order.total,
                estimated_minutes=order.estimated_minutes,
                currency=self.settings.stripe_currency,
            )
        except Exception as exc:
            logger.warning("Confirmation for %s not sent: %s", order_id, exc)

        return order

    def _validate_request(
        self, tenant, items, customer, service_type, payment_method,
        scheduled_for, special_instructions, discount, tip,
    ) -> list[str]:
        errors = []

        if not items:
            errors.append("Order must contain at least one item")
        elif len(items) > self.settings.max_items_per_order:
            errors.append(f"Order cannot contain more than {self.settings.max_items_per_order} items")
        for line in items:
            if not isinstance(line.quantity, int) or not 1 <= line.quantity <= MAX_LINE_QUANTITY:
                errors.append(f"Quantity for {line.product_id} must be between 1 and {MAX_LINE_QUANTITY}")

        if not customer.name or not customer.name.strip():
            errors.append("Customer name is required")
        pattern = tenant.phone_pattern or self.settings.phone_pattern
        if not customer.phone or not re.fullmatch(pattern, customer.phone):
            errors.append("Invalid phone number")

        try:
            ServiceType(service_type)
        except ValueError:
            errors.append(f"Unknown service type: {service_type}")
        if payment_method not in PAYMENT_METHODS:
            errors.append(f"Unknown payment method: {payment_method}")

        if scheduled_for is not None:
            now = utcnow()
            when = ensure_aware(scheduled_for)
            if when <= now:
                errors.append("Scheduled time must be in the future")
            elif when > now + timedelta(hours=self.settings.max_schedule_advance_hours):
                errors.append(
                    f"Orders can be scheduled at most {self.settings.max_schedule_advance_hours} hours ahead"
                )

        limit = self.settings.max_special_instructions_length
        if special_instructions and len(special_instructions) > limit:
            errors.append(f"Special instructions cannot exceed {limit} characters")

        if discount < 0:
            errors.append("Discount cannot be negative")
        if tip < 0:
            errors.append("Tip cannot be negative")

        return errors

    def _vat_rate(self, tenant: Tenant, service_type: ServiceType) -> float:
        if service_type is ServiceType.TABLE:
            rate = tenant.dine_in_vat_rate
            return self.settings.dine_in_vat_rate if rate is None else rate
        rate = tenant.takeaway_vat_rate
        return self.settings.takeaway_vat_rate if rate is None else rate

    async def _persist_new_order(self, order: Order) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(order)
        except SQLAlchemyError as exc:
            logger.error("Order %s could not be stored, releasing its stock: %s", order.id, exc)
            try:
                await self.inventory.release(order.tenant_id, order.id, reason="order not persisted")
            except (FulfillmentError, SQLAlchemyError) as release_exc:
                await self.compensations.record(
                    "inventory_release", order.tenant_id, order.id,
                    {"items": [[i["product_id"], i["quantity"]] for i in order.items]},
                    release_exc,
                )
            if isinstance(exc, IntegrityError):
                raise OrderAlreadyExistsError(
                    f"Order number {order.order_number} already exists for {order.tenant_id}"
                ) from exc
            raise OrderPersistenceError(f"Order {order.id} could not be stored") from exc

    async def _open_payment(self, tenant: Tenant, order: Order) -> Order:
        amount = order.total - order.tip
        if order.total <= 0:
            return await self._update_payment_fields(order.id, payment_status=PAYMENT_NOT_REQUIRED)
        try:
            intent_id = await self.payments.create_intent(tenant, order.id, amount=amount, tip=order.tip)
        except FulfillmentError as exc:
            logger.error("No payment intent for order %s: %s", order.id, exc)
            return await self._update_payment_fields(order.id, payment_status=PAYMENT_INTENT_FAILED)
        return await self._update_payment_fields(
            order.id, payment_intent_id=intent_id, payment_status="requires_payment",
        )

    async def ensure_payment_intent(self, tenant_id: str, order_id: str) -> Order:
        """Create the intent for a card order whose first attempt failed."""
        order = await self.get_order(tenant_id, order_id)
        if order.payment_method != "card" or order.payment_intent_id or is_terminal(order.status):
            return order
        tenant = await self.tenants.get_tenant(tenant_id)
        amount = order.total - order.tip
        intent_id = await self.payments.create_intent(tenant, order.id, amount=amount, tip=order.tip)
        return await self._update_payment_fields(
            order.id, payment_intent_id=intent_id, payment_status="requires_payment",
        )

    async def _update_payment_fields(self, order_id: str, **values) -> Order:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Order)
                    .where(Order.id == order_id)
                    .values(updated_at=utcnow(), **values)
                    .execution_options(synchronize_session=False)
                )
            return await session.get(Order, order_id, populate_existing=True)

    # =========================================================================
    # READ
    # =========================================================================

    async def get_order(self, tenant_id: str, order_id: str) -> Order:
        async with self.session_factory() as session:
            order = await session.get(Order, order_id)
        if order is None or order.tenant_id != tenant_id:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    async def list_orders(
        self,
        tenant_id: str,
        statuses: Optional[list[OrderStatus]] = None,
        location_id: Optional[str] = None,
        limit: Optional[int] = 100,
    ) -> list[Order]:
        async with self.session_factory() as session:
            stmt = select(Order).where(Order.tenant_id == tenant_id)
            if statuses:
                stmt = stmt.where(Order.status.in_([OrderStatus(s) for s in statuses]))
            if location_id:
                stmt = stmt.where(Order.location_id == location_id)
            result = await session.execute(stmt.order_by(Order.created_at.desc()).limit(limit))
            return list(result.scalars())

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def transition(
        self,
        tenant_id: str,
        order_id: str,
        target: OrderStatus | str,
        reason: Optional[str] = None,
    ) -> Order:
        target = OrderStatus(target)
        previous = await self._compare_and_transition(tenant_id, order_id, target, reason)
        order = await self.get_order(tenant_id, order_id)
        logger.info("Order %s: %s → %s", order_id, previous.value, target.value)

        if previous == OrderStatus.PENDING:
            await self._disarm(order_id)

        if target == OrderStatus.READY:
            await self._notify_customer(
                order, "Order ready",
                f"Order #{order.order_number} is ready for pickup",
                NotificationPriority.HIGH,
            )
        elif target == OrderStatus.CANCELLED:
            order = await self._after_cancel(order)

        return order

    async def cancel(self, tenant_id: str, order_id: str, reason: str) -> Order:
        return await self.transition(tenant_id, order_id, OrderStatus.CANCELLED, reason=reason)

    @with_optimistic_retry(OrderContentionError)
    async def _compare_and_transition(self, tenant_id, order_id, target, reason) -> OrderStatus:
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                order = await session.get(Order, order_id)
                if order is None or order.tenant_id != tenant_id:
                    raise OrderNotFoundError(f"Order {order_id} not found")

                current = order.status
                if target not in TRANSITIONS[current]:
                    raise InvalidTransitionError(order_id, current.value, target.value)

                values = {
                    "status": target,
                    "version": order.version + 1,
                    "updated_at": now,
                    STATUS_TIMESTAMPS[target]: now,
                }
                if target == OrderStatus.CANCELLED:
                    values["cancellation_reason"] = reason or "cancelled"

                result = await session.execute(
                    update(Order)
                    .where(
                        Order.id == order_id,
                        Order.status == current,
                        Order.version == order.version,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise StaleDataError(f"order {order_id} changed concurrently")
                return current

    async def _after_cancel(self, order: Order) -> Order:
        """Give back stock, money and the escalation slot. Failures are recorded, never raised."""
        try:
            await self.inventory.release(order.tenant_id, order.id, reason=f"order cancelled: {order.cancellation_reason}")
        except (FulfillmentError, SQLAlchemyError) as exc:
            await self.compensations.record(
                "inventory_release", order.tenant_id, order.id,
                {"reason": order.cancellation_reason}, exc,
            )

        if order.payment_intent_id:
            try:
                record = await self.payments.get_record(order.payment_intent_id)
                if record.status in CAPTURED_STATUSES:
                    if record.captured_amount > record.refunded_amount:
                        await self.payments.refund(order.payment_intent_id, reason=order.cancellation_reason)
                elif record.status in TIPPABLE_STATUSES:
                    await self.payments.cancel_intent(order.payment_intent_id)
            except (FulfillmentError, SQLAlchemyError) as exc:
                await self.compensations.record(
                    "payment_refund", order.tenant_id, order.id,
                    {"intent_id": order.payment_intent_id, "reason": order.cancellation_reason}, exc,
                )
            order = await self._sync_payment(order.id, order.payment_intent_id) or order

        await self._disarm(order.id)
        return order

    async def _disarm(self, order_id: str) -> None:
        try:
            await self.escalation.disarm(order_id)
        except SQLAlchemyError as exc:
            logger.warning("Escalation for %s not disarmed: %s", order_id, exc)

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    async def _sync_payment(self, order_id: str, intent_id: str) -> Optional[Order]:
        """Mirror the payment record onto the order; refunded amounts only grow."""
        record: PaymentRecord = await self.payments.get_record(intent_id)
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Order)
                    .where(Order.id == order_id, Order.refunded_amount <= record.refunded_amount)
                    .values(
                        refunded_amount=record.refunded_amount,
                        payment_status=PAYMENT_STATUS_FROM_RECORD[record.status],
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
            return await session.get(Order, order_id, populate_existing=True)

    async def add_tip(self, tenant_id: str, order_id: str, amount: int) -> PaymentRecord:
        """Tip after checkout; the order's own totals do not change."""
        order = await self.get_order(tenant_id, order_id)
        if order.status == OrderStatus.CANCELLED:
            raise TipNotAllowedError(f"Order {order_id} was cancelled")
        if not order.payment_intent_id:
            raise TipNotAllowedError(f"Order {order_id} has no card payment")
        await self.payments.add_tip(order.payment_intent_id, amount)
        return await self.payments.get_record(order.payment_intent_id)

    async def refund(
        self,
        tenant_id: str,
        order_id: str,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> dict:
        order = await self.get_order(tenant_id, order_id)
        if not order.payment_intent_id:
            raise PaymentNotCapturedError(f"Order {order_id} has no card payment")

        refund_id = await self.payments.refund(order.payment_intent_id, amount, reason or "requested_by_customer")
        order = await self._sync_payment(order_id, order.payment_intent_id)
        return {
            "refund_id": refund_id,
            "order_id": order_id,
            "refunded_amount": order.refunded_amount,
            "payment_status": order.payment_status,
        }

    async def handle_payment_event(self, event: dict) -> Optional[str]:
        """
        Apply a payment provider webhook event.

        Returns the affected order id, or None when the event is ignored.
        """
        event_type = event.get("type")
        intent = (event.get("data") or {}).get("object") or {}
        intent_id = intent.get("id")
        if event_type not in ("payment_intent.succeeded", "payment_intent.payment_failed") or not intent_id:
            logger.debug("Ignoring payment event %s", event_type)
            return None

        record = await self.payments.find_record(intent_id)
        if record is None:
            logger.warning("Payment event %s for unknown intent %s", event_type, intent_id)
            return None

        if event_type == "payment_intent.succeeded":
            await self.payments.mark_succeeded(intent_id, intent.get("amount_received"))
        else:
            await self.payments.mark_failed(intent_id)
        order = await self._sync_payment(record.order_id, intent_id)

        if event_type == "payment_intent.succeeded" and order and order.status == OrderStatus.CANCELLED:
            # Paid after the order was already cancelled
            logger.warning("Order %s was paid after cancellation; refunding", order.id)
            try:
                await self.payments.refund(intent_id, reason=order.cancellation_reason)
                await self._sync_payment(order.id, intent_id)
            except FulfillmentError as exc:
                await self.compensations.record(
                    "payment_refund", order.tenant_id, order.id, {"intent_id": intent_id}, exc,
                )

        return record.order_id

    # =========================================================================
    # ESCALATION
    # =========================================================================

    async def acknowledge_escalation(self, tenant_id: str, order_id: str):
        await self.get_order(tenant_id, order_id)
        return await self.escalation.acknowledge(tenant_id, order_id)

    # =========================================================================
    # NOTIFICATIONS
    # =========================================================================

    async def _notify_customer(self, order: Order, title: str, body: str, priority=NotificationPriority.NORMAL):
        try:
            result = await self.notifier.notify(
                order.customer_phone, NotificationChannel.SMS, title, body, priority,
                {"order_id": order.id},
            )
            if not result.success:
                logger.warning("Notice to customer of %s not delivered: %s", order.id, result.error_message)
        except Exception as exc:
            logger.warning("Notice to customer of %s failed: %s", order.id, exc)
