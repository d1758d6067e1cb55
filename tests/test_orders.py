import json
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.clock import utcnow
from fulfillment.core.exceptions import (
    InsufficientStockError,
    InvalidTransitionError,
    OrderNotFoundError,
    OrderPersistenceError,
    OrderValidationError,
    ProductUnavailableError,
    TenantClosedError,
    TipNotAllowedError,
)
from fulfillment.models import Order, OrderStatus, PaymentStatus, ServiceType
from fulfillment.services.orders import CartLine, CustomerInfo
from tests.conftest import LOCATION, PHONE, TENANT


async def stock(services, product_id):
    return (await services.inventory.get_item(TENANT, product_id)).quantity


async def pay(services, provider, order):
    event = provider.confirm_payment_intent(order.payment_intent_id)
    await services.orders.handle_payment_event(event)
    return await services.orders.get_order(TENANT, order.id)


# =============================================================================
# CREATE
# =============================================================================

async def test_create_order_assigns_number_totals_and_reserves_stock(services, place_order):
    order = await place_order(("burger", 2), ("fries", 1))

    assert order.status == OrderStatus.PENDING
    assert order.order_number == 100
    assert order.subtotal == 2 * 1450 + 650
    assert order.vat_rate == 2.5
    assert order.vat_amount == 89  # 2.5 % of 3550, half-up
    assert order.total == order.subtotal + order.vat_amount
    assert order.location_id == LOCATION
    assert order.estimated_minutes == 10 + 2 * 2
    assert [item["product_id"] for item in order.items] == ["burger", "fries"]
    assert await stock(services, "burger") == 8
    assert await stock(services, "fries") == 19


async def test_table_service_uses_dine_in_vat(place_order):
    order = await place_order(("burger", 1), service_type=ServiceType.TABLE)

    assert order.vat_rate == 7.7
    assert order.vat_amount == 112  # 7.7 % of 1450


async def test_card_order_opens_intent(services, place_order, provider):
    order = await place_order(tip=200)

    assert order.payment_intent_id in provider.intents
    assert order.payment_status == "requires_payment"
    record = await services.payments.get_record(order.payment_intent_id)
    assert record.amount == order.total
    assert record.tip == 200


async def test_cash_order_has_no_intent(place_order, provider):
    order = await place_order(payment_method="cash")

    assert order.payment_intent_id is None
    assert order.payment_status == "unpaid"
    assert provider.intents == {}


async def test_failed_intent_keeps_order_and_can_be_retried(services, place_order, provider):
    provider.failure_rate = 1.0
    order = await place_order()
    assert order.status == OrderStatus.PENDING
    assert order.payment_status == "intent_failed"
    assert order.payment_intent_id is None

    provider.failure_rate = 0.0
    order = await services.orders.ensure_payment_intent(TENANT, order.id)
    assert order.payment_intent_id in provider.intents
    assert order.payment_status == "requires_payment"


async def test_confirmation_is_sent_to_customer(place_order, notifier):
    order = await place_order()

    sms = notifier.sent_to(PHONE)
    assert len(sms) == 1
    assert f"#{order.order_number}" in sms[0].body
    assert len(notifier.sent_to("anna@example.ch")) == 1


async def test_closed_tenant_rejects_orders(services, place_order):
    await services.tenants.update_tenant(TENANT, is_open=False)

    with pytest.raises(TenantClosedError):
        await place_order()


@pytest.mark.parametrize(
    "kwargs, lines",
    [
        ({}, [("burger", 0)]),
        ({}, [("burger", 100)]),
        ({"payment_method": "bitcoin"}, [("burger", 1)]),
        ({"special_instructions": "x" * 201}, [("burger", 1)]),
        ({"discount": -1}, [("burger", 1)]),
        ({"scheduled_for": utcnow() - timedelta(minutes=5)}, [("burger", 1)]),
        ({"scheduled_for": utcnow() + timedelta(hours=25)}, [("burger", 1)]),
    ],
)
async def test_invalid_requests_are_rejected_before_side_effects(services, place_order, kwargs, lines):
    with pytest.raises(OrderValidationError):
        await place_order(*lines, **kwargs)

    assert await services.sequence.peek(TENANT) is None
    assert await stock(services, "burger") == 10


async def test_empty_cart_is_rejected(services, customer):
    with pytest.raises(OrderValidationError):
        await services.orders.create(TENANT, [], customer)


async def test_invalid_phone_is_rejected(services):
    with pytest.raises(OrderValidationError) as exc_info:
        await services.orders.create(TENANT, [CartLine("burger", 1)], CustomerInfo("Anna", "12345"))

    assert "Invalid phone number" in exc_info.value.errors


@pytest.mark.parametrize("phone", ["+41791234567\n", "+41791234567 ", "x+41791234567"])
async def test_phone_must_match_entirely(services, phone):
    with pytest.raises(OrderValidationError):
        await services.orders.create(TENANT, [CartLine("burger", 1)], CustomerInfo("Anna", phone))


async def test_unknown_and_unavailable_products(place_order):
    with pytest.raises(OrderValidationError):
        await place_order(("pizza", 1))

    with pytest.raises(ProductUnavailableError):
        await place_order(("soup", 1))


async def test_discount_larger_than_order_is_rejected(place_order):
    with pytest.raises(OrderValidationError):
        await place_order(("fries", 1), discount=10_000)


async def test_insufficient_stock_releases_partial_reservation(services, place_order):
    with pytest.raises(InsufficientStockError):
        await place_order(("burger", 2), ("fries", 21))

    assert await stock(services, "burger") == 10
    assert await stock(services, "fries") == 20


def fail_order_insert(monkeypatch):
    original_add = AsyncSession.add

    def add(self, instance, *args, **kwargs):
        if isinstance(instance, Order):
            raise OperationalError("INSERT INTO orders", {}, Exception("disk I/O error"))
        return original_add(self, instance, *args, **kwargs)

    monkeypatch.setattr(AsyncSession, "add", add)


async def test_failed_persistence_releases_reserved_stock(services, place_order, monkeypatch):
    fail_order_insert(monkeypatch)

    with pytest.raises(OrderPersistenceError) as exc_info:
        await place_order(("burger", 2), ("fries", 3))

    assert exc_info.value.status_code == 500
    assert await stock(services, "burger") == 10
    assert await stock(services, "fries") == 20
    assert await services.orders.list_orders(TENANT) == []
    assert await services.compensations.pending(TENANT) == []


async def test_failed_release_after_persistence_error_is_recorded(services, place_order, monkeypatch):
    fail_order_insert(monkeypatch)

    async def broken_release(tenant_id, order_id, reason="order cancelled"):
        raise OperationalError("UPDATE inventory_items", {}, Exception("database is locked"))

    monkeypatch.setattr(services.inventory, "release", broken_release)

    with pytest.raises(OrderPersistenceError):
        await place_order(("burger", 2))

    pending = await services.compensations.pending(TENANT)
    assert len(pending) == 1
    assert pending[0].kind == "inventory_release"
    assert pending[0].payload == {"items": [["burger", 2]]}
    assert "database is locked" in pending[0].error


async def test_order_numbers_increase(place_order):
    first = await place_order()
    second = await place_order(("fries", 1))

    assert second.order_number == first.order_number + 1


async def test_orders_are_tenant_scoped(services, place_order):
    order = await place_order()

    with pytest.raises(OrderNotFoundError):
        await services.orders.get_order("crepe-truck", order.id)


# =============================================================================
# TRANSITIONS
# =============================================================================

async def test_full_lifecycle(services, place_order, notifier):
    order = await place_order()

    for target in (OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.COMPLETED):
        order = await services.orders.transition(TENANT, order.id, target)
        assert order.status == target

    assert order.confirmed_at and order.ready_at and order.completed_at
    assert order.version == 5
    assert "Order ready" in [n.body.split(":")[0] for n in notifier.sent_to(PHONE)]


async def test_invalid_transition_does_not_change_the_order(services, place_order):
    order = await place_order()

    with pytest.raises(InvalidTransitionError):
        await services.orders.transition(TENANT, order.id, OrderStatus.READY)

    unchanged = await services.orders.get_order(TENANT, order.id)
    assert unchanged.status == OrderStatus.PENDING
    assert unchanged.version == order.version


async def test_completed_order_cannot_be_cancelled(services, place_order):
    order = await place_order()
    for target in (OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.COMPLETED):
        await services.orders.transition(TENANT, order.id, target)

    with pytest.raises(InvalidTransitionError):
        await services.orders.cancel(TENANT, order.id, "changed mind")


async def test_confirming_disarms_escalation(services, place_order):
    order = await place_order()
    assert (await services.escalation.get_alert(order.id)).active

    await services.orders.transition(TENANT, order.id, OrderStatus.CONFIRMED)

    assert not (await services.escalation.get_alert(order.id)).active


# =============================================================================
# CANCELLATION
# =============================================================================

async def test_cancel_unpaid_order_restores_stock_and_cancels_intent(services, place_order, provider):
    order = await place_order(("burger", 3))
    assert await stock(services, "burger") == 7

    cancelled = await services.orders.cancel(TENANT, order.id, "customer request")

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.cancellation_reason == "customer request"
    assert cancelled.payment_status == "cancelled"
    assert await stock(services, "burger") == 10
    assert provider.intents[order.payment_intent_id].status == "canceled"


async def test_cancel_paid_order_refunds_everything(services, place_order, provider):
    order = await pay(services, provider, await place_order(tip=300))
    assert order.payment_status == "paid"

    cancelled = await services.orders.cancel(TENANT, order.id, "out of buns")

    assert cancelled.payment_status == "refunded"
    assert cancelled.refunded_amount == order.total
    record = await services.payments.get_record(order.payment_intent_id)
    assert record.status == PaymentStatus.REFUNDED
    assert provider.intents[order.payment_intent_id].amount_refunded == order.total


async def test_second_cancel_is_rejected_and_stock_restored_once(services, place_order):
    order = await place_order(("burger", 2))
    await services.orders.cancel(TENANT, order.id, "first")

    with pytest.raises(InvalidTransitionError):
        await services.orders.cancel(TENANT, order.id, "second")

    assert await stock(services, "burger") == 10


async def test_cancel_with_failed_refund_is_recorded_for_reconciliation(services, place_order, provider):
    order = await pay(services, provider, await place_order())
    provider.failure_rate = 1.0

    cancelled = await services.orders.cancel(TENANT, order.id, "broken grill")

    assert cancelled.status == OrderStatus.CANCELLED
    assert await stock(services, "burger") == 10
    pending = await services.compensations.pending(TENANT)
    assert [(p.kind, p.order_id) for p in pending] == [("payment_refund", order.id)]


# =============================================================================
# PAYMENTS
# =============================================================================

async def test_partial_refund_is_mirrored_on_the_order(services, place_order, provider):
    order = await pay(services, provider, await place_order())

    result = await services.orders.refund(TENANT, order.id, amount=500, reason="cold fries")

    assert result["refunded_amount"] == 500
    assert result["payment_status"] == "partially_refunded"
    assert (await services.orders.get_order(TENANT, order.id)).refunded_amount == 500


async def test_tip_after_checkout_leaves_order_totals(services, place_order):
    order = await place_order()

    record = await services.orders.add_tip(TENANT, order.id, 250)

    assert record.tip == 250
    assert (await services.orders.get_order(TENANT, order.id)).total == order.total


async def test_tip_on_cash_order_is_rejected(services, place_order):
    order = await place_order(payment_method="cash")

    with pytest.raises(TipNotAllowedError):
        await services.orders.add_tip(TENANT, order.id, 250)


async def test_failed_payment_event_marks_order(services, place_order, provider):
    order = await place_order()
    event = provider.confirm_payment_intent(order.payment_intent_id, succeed=False)

    assert await services.orders.handle_payment_event(event) == order.id
    assert (await services.orders.get_order(TENANT, order.id)).payment_status == "failed"


async def test_payment_after_cancellation_is_refunded(services, place_order, provider):
    order = await place_order()
    # Customer pays at the provider; the webhook arrives after the cancel
    event = provider.confirm_payment_intent(order.payment_intent_id)
    await services.orders.cancel(TENANT, order.id, "customer request")

    await services.orders.handle_payment_event(event)

    order = await services.orders.get_order(TENANT, order.id)
    assert order.status == OrderStatus.CANCELLED
    assert order.payment_status == "refunded"
    assert order.refunded_amount == order.total
    assert provider.intents[order.payment_intent_id].amount_refunded == order.total


async def test_unknown_payment_events_are_ignored(services):
    assert await services.orders.handle_payment_event({"type": "charge.refunded"}) is None
    event = {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_unknown"}}}
    assert await services.orders.handle_payment_event(event) is None


async def test_webhook_payload_round_trips_through_provider(services, place_order, provider):
    order = await place_order()
    event = provider.confirm_payment_intent(order.payment_intent_id)

    parsed = await provider.verify_webhook(json.dumps(event).encode(), "")

    assert await services.orders.handle_payment_event(parsed) == order.id
