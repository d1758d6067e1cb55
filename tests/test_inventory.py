import asyncio

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from fulfillment.core.exceptions import (
    InsufficientStockError,
    InvalidMovementError,
    InventoryContentionError,
    InventoryItemExistsError,
    InventoryItemNotFoundError,
)
from fulfillment.models import InventoryItem, MovementType, StockLevel
from fulfillment.services.notifications import NotificationChannel
from tests.conftest import TENANT


async def test_sale_below_zero_is_clamped_and_recorded(services):
    await services.inventory.initialize_item(TENANT, "lemonade", 3)

    quantity = await services.inventory.apply(TENANT, "lemonade", 5, MovementType.SALE)

    assert quantity == 0
    movements = await services.inventory.list_movements(TENANT, product_id="lemonade")
    last = movements[-1]
    assert last.clamped is True
    assert last.requested_quantity == 5
    assert last.delta == -3


async def test_strict_decrement_raises_and_leaves_stock(services):
    with pytest.raises(InsufficientStockError) as exc_info:
        await services.inventory.apply(TENANT, "burger", 11, MovementType.SALE, strict=True)

    assert exc_info.value.available == 10
    assert (await services.inventory.get_item(TENANT, "burger")).quantity == 10


async def test_movements_sum_to_quantity(services):
    inventory = services.inventory
    await inventory.apply(TENANT, "fries", 5, MovementType.SALE)
    await inventory.apply(TENANT, "fries", 2, MovementType.WASTE, reason="dropped")
    await inventory.apply(TENANT, "fries", 10, MovementType.PURCHASE)
    await inventory.apply(TENANT, "fries", 1, MovementType.RETURN)
    await inventory.apply(TENANT, "fries", 30, MovementType.SALE)  # clamped
    await inventory.apply(TENANT, "fries", 12, MovementType.ADJUSTMENT)

    check = await inventory.reconstruct_quantity(TENANT, "fries")
    assert check["consistent"] is True
    assert check["item_quantity"] == 12


async def test_sale_then_return_restores_quantity(services):
    await services.inventory.apply(TENANT, "burger", 2, MovementType.SALE)
    assert (await services.inventory.get_item(TENANT, "burger")).quantity == 8

    await services.inventory.apply(TENANT, "burger", 2, MovementType.RETURN)
    assert (await services.inventory.get_item(TENANT, "burger")).quantity == 10


async def test_adjustment_sets_absolute_quantity(services):
    assert await services.inventory.apply(TENANT, "burger", 4, MovementType.ADJUSTMENT) == 4


async def test_negative_quantity_is_rejected(services):
    with pytest.raises(InvalidMovementError):
        await services.inventory.apply(TENANT, "burger", -1, MovementType.PURCHASE)


async def test_unknown_item_is_not_found(services):
    with pytest.raises(InventoryItemNotFoundError):
        await services.inventory.apply(TENANT, "nope", 1, MovementType.SALE)


async def test_item_can_only_be_initialized_once(services):
    with pytest.raises(InventoryItemExistsError):
        await services.inventory.initialize_item(TENANT, "burger", 5)


async def test_levels_and_alerts_on_entering_a_level(services, notifier):
    inventory = services.inventory

    await inventory.apply(TENANT, "burger", 7, MovementType.SALE)  # 3 -> low
    item = await inventory.get_item(TENANT, "burger")
    assert item.level == StockLevel.LOW

    await inventory.apply(TENANT, "burger", 2, MovementType.SALE)  # 1 -> critical
    await inventory.apply(TENANT, "burger", 1, MovementType.SALE)  # 0 -> still critical
    item = await inventory.get_item(TENANT, "burger")
    assert item.level == StockLevel.CRITICAL

    titles = [n.title for n in notifier.sent_to(TENANT)]
    assert titles == ["Low stock", "Critical stock level"]
    assert all(n.channel == NotificationChannel.PUSH for n in notifier.sent_to(TENANT))


async def test_overstock_level(services):
    await services.inventory.initialize_item(TENANT, "lemonade", 5, max_quantity=20)

    await services.inventory.apply(TENANT, "lemonade", 13, MovementType.PURCHASE)

    assert (await services.inventory.get_item(TENANT, "lemonade")).level == StockLevel.OVERSTOCK


async def test_last_unit_goes_to_exactly_one_order(services):
    await services.inventory.initialize_item(TENANT, "lemonade", 1)

    results = await asyncio.gather(
        *[services.inventory.reserve(TENANT, f"ord_{i}", [("lemonade", 1)]) for i in range(5)],
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, InsufficientStockError)]
    assert len(winners) == 1
    assert len(losers) == 4
    assert (await services.inventory.get_item(TENANT, "lemonade")).quantity == 0


async def test_reservation_rolls_back_on_partial_failure(services):
    with pytest.raises(InsufficientStockError):
        await services.inventory.reserve(TENANT, "ord_x", [("burger", 2), ("fries", 21)])

    assert (await services.inventory.get_item(TENANT, "burger")).quantity == 10
    assert (await services.inventory.get_item(TENANT, "fries")).quantity == 20
    assert await services.inventory.reserved_for_order(TENANT, "ord_x") == {}


async def test_reservation_merges_lines_and_skips_untracked(services):
    reserved = await services.inventory.reserve(
        TENANT, "ord_y", [("burger", 1), ("lemonade", 2), ("burger", 2)],
    )

    assert [(r.product_id, r.quantity) for r in reserved] == [("burger", 3)]
    assert await services.inventory.reserved_for_order(TENANT, "ord_y") == {"burger": 3}


async def test_release_is_idempotent(services):
    await services.inventory.reserve(TENANT, "ord_z", [("burger", 2), ("fries", 3)])

    first = await services.inventory.release(TENANT, "ord_z")
    second = await services.inventory.release(TENANT, "ord_z")

    assert sorted((r.product_id, r.quantity) for r in first) == [("burger", 2), ("fries", 3)]
    assert second == []
    assert (await services.inventory.get_item(TENANT, "burger")).quantity == 10
    assert (await services.inventory.get_item(TENANT, "fries")).quantity == 20


async def test_reconcile_reports_accuracy_and_corrects_stock(services, notifier):
    report = await services.inventory.reconcile(
        TENANT, {"burger": 8, "fries": 20, "ghost": 5}, counted_by="lea",
    )

    assert report.total_items == 2
    assert report.accurate_items == 1
    assert report.accuracy == 50.0
    assert report.unknown_products == ["ghost"]
    assert report.discrepancies == [
        {"product_id": "burger", "expected": 10, "counted": 8, "difference": -2},
    ]
    assert (await services.inventory.get_item(TENANT, "burger")).quantity == 8
    assert "Inventory count accuracy low" in [n.title for n in notifier.sent_to(TENANT)]


async def test_empty_count_is_fully_accurate(services, notifier):
    report = await services.inventory.reconcile(TENANT, {})

    assert report.accuracy == 100.0
    assert notifier.sent == []


async def test_negative_count_is_rejected(services):
    with pytest.raises(InvalidMovementError):
        await services.inventory.reconcile(TENANT, {"burger": -1})


async def test_waste_is_booked_as_a_movement(services):
    assert await services.inventory.record_waste(TENANT, "fries", 4, "expired") == 16

    movements = await services.inventory.list_movements(TENANT, product_id="fries")
    assert movements[-1].movement_type == MovementType.WASTE
    assert movements[-1].reason == "expired"


def failing_apply(inventory, monkeypatch, fail_on):
    """Make ``apply`` raise a database error for the given (product, movement type) pairs."""
    original = inventory.apply

    async def apply(tenant_id, product_id, quantity, movement_type, **kwargs):
        if (product_id, MovementType(movement_type)) in fail_on:
            raise OperationalError("UPDATE inventory_items", {}, Exception("database is locked"))
        return await original(tenant_id, product_id, quantity, movement_type, **kwargs)

    monkeypatch.setattr(inventory, "apply", apply)


async def test_database_error_mid_reservation_returns_reserved_lines(services, monkeypatch):
    failing_apply(services.inventory, monkeypatch, {("fries", MovementType.SALE)})

    with pytest.raises(OperationalError):
        await services.inventory.reserve(TENANT, "ord_db", [("burger", 2), ("fries", 1)])

    assert (await services.inventory.get_item(TENANT, "burger")).quantity == 10
    assert await services.inventory.reserved_for_order(TENANT, "ord_db") == {}
    assert await services.compensations.pending(TENANT) == []


async def test_failed_reservation_rollback_is_recorded(services, monkeypatch):
    failing_apply(
        services.inventory, monkeypatch,
        {("fries", MovementType.SALE), ("burger", MovementType.RETURN)},
    )

    with pytest.raises(OperationalError):
        await services.inventory.reserve(TENANT, "ord_db", [("burger", 2), ("fries", 1)])

    pending = await services.compensations.pending(TENANT)
    assert [(p.kind, p.order_id, p.payload) for p in pending] == [
        ("inventory_release", "ord_db", {"product_id": "burger", "quantity": 2}),
    ]


async def test_exhausted_retries_raise_retryable_contention(services, settings, monkeypatch):
    monkeypatch.setattr(settings, "contention_max_retries", 2)
    original_get = AsyncSession.get

    async def stale_get(self, entity, ident, **kwargs):
        obj = await original_get(self, entity, ident, **kwargs)
        if entity is InventoryItem and obj is not None:
            # Someone else bumped the version after our read
            set_committed_value(obj, "version", obj.version - 1)
        return obj

    monkeypatch.setattr(AsyncSession, "get", stale_get)

    with pytest.raises(InventoryContentionError) as exc_info:
        await services.inventory.apply(TENANT, "fries", 1, MovementType.SALE)

    assert exc_info.value.retryable is True
    assert exc_info.value.status_code == 503
    monkeypatch.undo()
    assert (await services.inventory.get_item(TENANT, "fries")).quantity == 20
