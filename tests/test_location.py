from datetime import timedelta

import pytest

from fulfillment.core.clock import utcnow
from fulfillment.core.exceptions import LocationNotFoundError
from fulfillment.models import OrderStatus
from fulfillment.services.location import LOCATION_MISMATCH
from tests.conftest import LOCATION, OTHER_TENANT, PHONE, TENANT


async def test_matching_location_is_compliant(services):
    await services.locations.report_position(TENANT, LOCATION, at=utcnow() - timedelta(hours=2))

    assert await services.locations.verify(TENANT, LOCATION) is True


async def test_mismatch_within_grace_period_is_tolerated(services, place_order):
    order = await place_order()
    await services.locations.report_position(TENANT, "marktplatz", at=utcnow() - timedelta(minutes=5))

    assert await services.locations.verify(TENANT, LOCATION) is True
    assert (await services.orders.get_order(TENANT, order.id)).status == OrderStatus.PENDING


async def test_stale_mismatch_cancels_open_orders_and_closes_tenant(services, place_order, notifier):
    pending = await place_order(("burger", 2))
    preparing = await place_order(("fries", 1))
    confirmed = await place_order(("burger", 1))
    await services.orders.transition(TENANT, preparing.id, OrderStatus.CONFIRMED)
    await services.orders.transition(TENANT, preparing.id, OrderStatus.PREPARING)
    await services.orders.transition(TENANT, confirmed.id, OrderStatus.CONFIRMED)
    await services.locations.report_position(TENANT, "marktplatz", at=utcnow() - timedelta(minutes=20))
    notifier.clear()

    assert await services.locations.verify(TENANT, LOCATION) is False

    for order in (pending, preparing):
        cancelled = await services.orders.get_order(TENANT, order.id)
        assert cancelled.status == OrderStatus.CANCELLED
        assert cancelled.cancellation_reason == LOCATION_MISMATCH
    assert (await services.orders.get_order(TENANT, confirmed.id)).status == OrderStatus.CONFIRMED

    tenant = await services.tenants.get_tenant(TENANT)
    assert tenant.is_open is False
    location = await services.tenants.get_location(TENANT, LOCATION)
    assert location.is_active is False
    assert location.not_at_location_since is not None

    # Only the confirmed order still holds stock
    assert (await services.inventory.get_item(TENANT, "burger")).quantity == 9
    assert (await services.inventory.get_item(TENANT, "fries")).quantity == 20

    sms = notifier.sent_to(PHONE)
    assert len(sms) == 2
    assert all(n.body.startswith("Order cancelled") for n in sms)
    assert [n.title for n in notifier.sent_to(TENANT)] == ["Location check failed"]


async def test_missing_report_counts_as_stale(services):
    assert await services.locations.verify(TENANT, LOCATION) is False
    assert (await services.tenants.get_tenant(TENANT)).is_open is False


async def test_orders_at_other_locations_are_untouched(services, place_order):
    elsewhere = await place_order(location_id="marktplatz")

    assert await services.locations.verify(TENANT, LOCATION) is False

    assert (await services.orders.get_order(TENANT, elsewhere.id)).status == OrderStatus.PENDING


async def test_paid_orders_are_refunded_on_mismatch(services, place_order, provider):
    order = await place_order()
    event = provider.confirm_payment_intent(order.payment_intent_id)
    await services.orders.handle_payment_event(event)

    await services.locations.verify(TENANT, LOCATION)

    order = await services.orders.get_order(TENANT, order.id)
    assert order.payment_status == "refunded"
    assert order.refunded_amount == order.total


async def test_verify_all_checks_tenants_with_an_announced_location(services):
    await services.locations.report_position(TENANT, LOCATION)

    assert await services.locations.verify_all() == {TENANT: True}

    await services.tenants.add_location(OTHER_TENANT, "seeplatz", "Seeplatz")
    await services.locations.announce(OTHER_TENANT, "seeplatz")

    assert await services.locations.verify_all() == {TENANT: True, OTHER_TENANT: False}
    # Closed tenants are no longer checked
    assert await services.locations.verify_all() == {TENANT: True}


async def test_report_position_reactivates_location(services):
    await services.locations.verify(TENANT, LOCATION)
    assert (await services.tenants.get_location(TENANT, LOCATION)).is_active is False

    tenant = await services.locations.report_position(TENANT, LOCATION)

    location = await services.tenants.get_location(TENANT, LOCATION)
    assert location.is_active is True
    assert location.not_at_location_since is None
    assert tenant.current_location_id == LOCATION


async def test_announcing_unknown_location_fails(services):
    with pytest.raises(LocationNotFoundError):
        await services.locations.announce(TENANT, "mond")
