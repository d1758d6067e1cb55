"""
Inventory Ledger

Per-tenant stock levels backed by an append-only movement ledger.

Every change is a single transaction that compare-and-swaps the item's
version and appends the movement, so the sum of applied movement deltas
always equals the item quantity. Quantities never go below zero:
ordinary decrements clamp (and log the clamp), strict decrements used for
order reservations are rejected with InsufficientStockError instead. That
strict path is what lets two concurrent orders for the last unit produce
exactly one success.

Movement kinds:
    sale, waste         subtract the quantity
    purchase, return    add the quantity
    adjustment          set the absolute quantity (physical counts)

Threshold levels are re-evaluated after each change and the tenant is
notified when an item enters the critical, low or overstock level.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.clock import utcnow
from fulfillment.core.config import Settings
from fulfillment.core.exceptions import (
    FulfillmentError,
    InsufficientStockError,
    InvalidMovementError,
    InventoryContentionError,
    InventoryItemExistsError,
    InventoryItemNotFoundError,
)
from fulfillment.core.retry import StaleDataError, with_optimistic_retry
from fulfillment.models import (
    InventoryCountReport,
    InventoryItem,
    InventoryMovement,
    MovementType,
    StockLevel,
)
from fulfillment.services.compensation import CompensationLog
from fulfillment.services.notifications import (
    BaseNotificationService,
    NotificationChannel,
    NotificationPriority,
)

logger = logging.getLogger(__name__)

DECREMENTS = {MovementType.SALE, MovementType.WASTE}
INCREMENTS = {MovementType.PURCHASE, MovementType.RETURN}


@dataclass
class ReservedLine:
    product_id: str
    quantity: int


class InventoryLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        notifier: BaseNotificationService,
        compensations: Optional[CompensationLog] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.notifier = notifier
        self.compensations = compensations or CompensationLog(session_factory)

    # =========================================================================
    # ITEMS
    # =========================================================================

    async def initialize_item(
        self,
        tenant_id: str,
        product_id: str,
        quantity: int = 0,
        *,
        name: Optional[str] = None,
        unit: str = "pcs",
        min_quantity: int = 0,
        reorder_point: int = 0,
        max_quantity: Optional[int] = None,
    ) -> InventoryItem:
        """Start tracking a product. Opening stock is booked as a purchase movement."""
        if quantity < 0:
            raise InvalidMovementError("Opening quantity cannot be negative")

        now = utcnow()
        item = InventoryItem(
            tenant_id=tenant_id,
            product_id=product_id,
            name=name,
            quantity=quantity,
            unit=unit,
            min_quantity=min_quantity,
            reorder_point=reorder_point,
            max_quantity=max_quantity,
            version=1,
            updated_at=now,
            last_restocked_at=now if quantity else None,
        )
        item.level = self.evaluate_level(item, quantity)

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(item)
                    session.add(InventoryMovement(
                        tenant_id=tenant_id,
                        product_id=product_id,
                        movement_type=MovementType.PURCHASE,
                        delta=quantity,
                        requested_quantity=quantity,
                        clamped=False,
                        quantity_after=quantity,
                        reason="opening stock",
                        created_at=now,
                    ))
        except IntegrityError as exc:
            raise InventoryItemExistsError(f"{product_id} is already tracked for {tenant_id}") from exc

        logger.info("Tracking %s/%s with %d %s", tenant_id, product_id, quantity, unit)
        return item

    async def get_item(self, tenant_id: str, product_id: str) -> InventoryItem:
        async with self.session_factory() as session:
            item = await session.get(InventoryItem, (tenant_id, product_id))
        if item is None:
            raise InventoryItemNotFoundError(f"No inventory item {product_id} for tenant {tenant_id}")
        return item

    async def list_movements(
        self,
        tenant_id: str,
        product_id: Optional[str] = None,
        order_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[InventoryMovement]:
        async with self.session_factory() as session:
            stmt = select(InventoryMovement).where(InventoryMovement.tenant_id == tenant_id)
            if product_id:
                stmt = stmt.where(InventoryMovement.product_id == product_id)
            if order_id:
                stmt = stmt.where(InventoryMovement.order_id == order_id)
            result = await session.execute(stmt.order_by(InventoryMovement.id).limit(limit))
            return list(result.scalars())

    def evaluate_level(self, item: InventoryItem, quantity: int) -> StockLevel:
        if quantity <= item.min_quantity:
            return StockLevel.CRITICAL
        if quantity <= item.reorder_point:
            return StockLevel.LOW
        if item.max_quantity and quantity >= item.max_quantity * self.settings.overstock_ratio:
            return StockLevel.OVERSTOCK
        return StockLevel.OK

    # =========================================================================
    # MOVEMENTS
    # =========================================================================

    async def apply(
        self,
        tenant_id: str,
        product_id: str,
        quantity: int,
        movement_type: MovementType | str,
        order_id: Optional[str] = None,
        reason: Optional[str] = None,
        strict: bool = False,
    ) -> int:
        """
        Apply one movement and return the new quantity.

        ``quantity`` is a non-negative magnitude; the movement type gives the
        direction. With ``strict`` a decrement below zero raises
        InsufficientStockError instead of clamping.
        """
        movement_type = MovementType(movement_type)
        if quantity < 0:
            raise InvalidMovementError("Movement quantity must be zero or positive")

        new_quantity, previous_level, level, name = await self._apply_once(
            tenant_id, product_id, quantity, movement_type, order_id, reason, strict,
        )

        if level != previous_level and level != StockLevel.OK:
            await self._notify_level(tenant_id, product_id, name, level, new_quantity)
        return new_quantity

    @with_optimistic_retry(InventoryContentionError)
    async def _apply_once(self, tenant_id, product_id, quantity, movement_type, order_id, reason, strict):
        now = utcnow()
        async with self.session_factory() as session:
            async with session.begin():
                item = await session.get(InventoryItem, (tenant_id, product_id))
                if item is None:
                    raise InventoryItemNotFoundError(
                        f"No inventory item {product_id} for tenant {tenant_id}"
                    )

                before = item.quantity
                if movement_type is MovementType.ADJUSTMENT:
                    target = quantity
                elif movement_type in DECREMENTS:
                    target = before - quantity
                else:
                    target = before + quantity

                clamped = False
                if target < 0:
                    if strict:
                        raise InsufficientStockError(product_id, quantity, before)
                    logger.warning(
                        "Clamped %s of %d on %s/%s at 0 (had %d)",
                        movement_type.value, quantity, tenant_id, product_id, before,
                    )
                    target = 0
                    clamped = True

                level = self.evaluate_level(item, target)
                values = {
                    "quantity": target,
                    "level": level,
                    "version": item.version + 1,
                    "updated_at": now,
                }
                if movement_type is MovementType.SALE:
                    values["last_sold_at"] = now
                elif movement_type is MovementType.PURCHASE:
                    values["last_restocked_at"] = now

                result = await session.execute(
                    update(InventoryItem)
                    .where(
                        InventoryItem.tenant_id == tenant_id,
                        InventoryItem.product_id == product_id,
                        InventoryItem.version == item.version,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise StaleDataError(f"inventory {tenant_id}/{product_id} changed concurrently")

                session.add(InventoryMovement(
                    tenant_id=tenant_id,
                    product_id=product_id,
                    movement_type=movement_type,
                    delta=target - before,
                    requested_quantity=quantity,
                    clamped=clamped,
                    quantity_after=target,
                    order_id=order_id,
                    reason=reason,
                    created_at=now,
                ))

        return target, item.level, level, item.name or product_id

    async def record_waste(self, tenant_id: str, product_id: str, quantity: int, reason: str) -> int:
        """Book spoiled or discarded stock."""
        logger.info("Waste of %d on %s/%s: %s", quantity, tenant_id, product_id, reason)
        return await self.apply(tenant_id, product_id, quantity, MovementType.WASTE, reason=reason)

    # =========================================================================
    # ORDER RESERVATIONS
    # =========================================================================

    async def reserve(
        self,
        tenant_id: str,
        order_id: str,
        lines: Iterable[tuple[str, int]],
    ) -> list[ReservedLine]:
        """
        Reserve stock for every line of an order as one logical step.

        Lines for the same product are merged and products are taken in a
        stable order. Products without an inventory item are not tracked and
        are skipped. If any line fails, lines already reserved are released
        before the error propagates.
        """
        merged: dict[str, int] = defaultdict(int)
        for product_id, quantity in lines:
            merged[product_id] += quantity

        reserved: list[ReservedLine] = []
        try:
            for product_id in sorted(merged):
                try:
                    await self.apply(
                        tenant_id, product_id, merged[product_id], MovementType.SALE,
                        order_id=order_id, reason="order reservation", strict=True,
                    )
                except InventoryItemNotFoundError:
                    continue
                reserved.append(ReservedLine(product_id, merged[product_id]))
        except (FulfillmentError, SQLAlchemyError):
            await self._rollback_reservation(tenant_id, order_id, reserved)
            raise

        return reserved

    async def _rollback_reservation(self, tenant_id, order_id, reserved):
        for line in reserved:
            try:
                await self.apply(
                    tenant_id, line.product_id, line.quantity, MovementType.RETURN,
                    order_id=order_id, reason="reservation rollback",
                )
            except (FulfillmentError, SQLAlchemyError) as exc:
                await self.compensations.record(
                    "inventory_release", tenant_id, order_id,
                    {"product_id": line.product_id, "quantity": line.quantity}, exc,
                )

    async def reserved_for_order(self, tenant_id: str, order_id: str) -> dict[str, int]:
        """Net quantity currently held by an order, per product."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(InventoryMovement.product_id, func.sum(InventoryMovement.delta))
                .where(
                    InventoryMovement.tenant_id == tenant_id,
                    InventoryMovement.order_id == order_id,
                    InventoryMovement.movement_type.in_([MovementType.SALE, MovementType.RETURN]),
                )
                .group_by(InventoryMovement.product_id)
            )
            return {product_id: -int(total) for product_id, total in result.all() if total and total < 0}

    async def release(self, tenant_id: str, order_id: str, reason: str = "order cancelled") -> list[ReservedLine]:
        """
        Return everything an order still holds.

        Quantities come from the order's own movements, so releasing twice
        returns nothing the second time.
        """
        released = []
        for product_id, quantity in sorted((await self.reserved_for_order(tenant_id, order_id)).items()):
            await self.apply(
                tenant_id, product_id, quantity, MovementType.RETURN,
                order_id=order_id, reason=reason,
            )
            released.append(ReservedLine(product_id, quantity))
        if released:
            logger.info("Released %d line(s) for order %s", len(released), order_id)
        return released

    # =========================================================================
    # PHYSICAL COUNTS
    # =========================================================================

    async def reconcile(
        self,
        tenant_id: str,
        counts: dict[str, int],
        counted_by: Optional[str] = None,
    ) -> InventoryCountReport:
        """
        Compare a physical count with the ledger and correct the differences.

        Each mismatch is booked as an adjustment movement. Products that are
        not tracked are listed separately and excluded from the accuracy.
        """
        discrepancies = []
        unknown = []
        counted = 0

        for product_id, counted_quantity in counts.items():
            if counted_quantity < 0:
                raise InvalidMovementError(f"Counted quantity for {product_id} cannot be negative")
            try:
                item = await self.get_item(tenant_id, product_id)
            except InventoryItemNotFoundError:
                unknown.append(product_id)
                continue

            counted += 1
            if item.quantity != counted_quantity:
                discrepancies.append({
                    "product_id": product_id,
                    "expected": item.quantity,
                    "counted": counted_quantity,
                    "difference": counted_quantity - item.quantity,
                })
                await self.apply(
                    tenant_id, product_id, counted_quantity, MovementType.ADJUSTMENT,
                    reason=f"inventory count{' by ' + counted_by if counted_by else ''}",
                )

        accurate = counted - len(discrepancies)
        accuracy = round(accurate / counted * 100, 1) if counted else 100.0

        report = InventoryCountReport(
            id=f"cnt_{uuid.uuid4().hex}",
            tenant_id=tenant_id,
            total_items=counted,
            accurate_items=accurate,
            accuracy=accuracy,
            discrepancies=discrepancies,
            unknown_products=unknown,
            counted_by=counted_by,
            created_at=utcnow(),
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(report)

        if unknown:
            logger.warning("Inventory count for %s skipped unknown products: %s", tenant_id, unknown)

        if accuracy < self.settings.count_accuracy_alert_threshold:
            await self._safe_notify(
                tenant_id,
                "Inventory count accuracy low",
                f"Count accuracy {accuracy}% with {len(discrepancies)} discrepancies",
                NotificationPriority.HIGH,
                {"report_id": report.id, "accuracy": accuracy},
            )

        return report

    async def reconstruct_quantity(self, tenant_id: str, product_id: str, repair: bool = False) -> dict:
        """
        Rebuild the quantity from the ledger.

        With ``repair`` the item row is reset to the ledger sum when they disagree.
        """
        async with self.session_factory() as session:
            ledger_sum = await session.scalar(
                select(func.coalesce(func.sum(InventoryMovement.delta), 0)).where(
                    InventoryMovement.tenant_id == tenant_id,
                    InventoryMovement.product_id == product_id,
                )
            )
        item = await self.get_item(tenant_id, product_id)
        consistent = int(ledger_sum) == item.quantity

        if not consistent:
            logger.error(
                "Ledger mismatch on %s/%s: item=%d movements=%d",
                tenant_id, product_id, item.quantity, ledger_sum,
            )
            if repair:
                await self._overwrite_quantity(tenant_id, product_id, max(int(ledger_sum), 0))

        return {
            "product_id": product_id,
            "item_quantity": item.quantity,
            "ledger_quantity": int(ledger_sum),
            "consistent": consistent,
            "repaired": repair and not consistent,
        }

    @with_optimistic_retry(InventoryContentionError)
    async def _overwrite_quantity(self, tenant_id, product_id, quantity):
        async with self.session_factory() as session:
            async with session.begin():
                item = await session.get(InventoryItem, (tenant_id, product_id))
                result = await session.execute(
                    update(InventoryItem)
                    .where(
                        InventoryItem.tenant_id == tenant_id,
                        InventoryItem.product_id == product_id,
                        InventoryItem.version == item.version,
                    )
                    .values(
                        quantity=quantity,
                        level=self.evaluate_level(item, quantity),
                        version=item.version + 1,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise StaleDataError(f"inventory {tenant_id}/{product_id} changed concurrently")

    # =========================================================================
    # ALERTS
    # =========================================================================

    async def _notify_level(self, tenant_id, product_id, name, level, quantity):
        titles = {
            StockLevel.CRITICAL: "Critical stock level",
            StockLevel.LOW: "Low stock",
            StockLevel.OVERSTOCK: "Overstock",
        }
        await self._safe_notify(
            tenant_id,
            titles[level],
            f"{name}: {quantity} left",
            NotificationPriority.HIGH if level is StockLevel.CRITICAL else NotificationPriority.NORMAL,
            {"product_id": product_id, "level": level.value, "quantity": quantity},
        )

    async def _safe_notify(self, tenant_id, title, body, priority, data):
        try:
            result = await self.notifier.notify(
                tenant_id, NotificationChannel.PUSH, title, body, priority, data,
            )
            if not result.success:
                logger.warning("Inventory alert to %s not delivered: %s", tenant_id, result.error_message)
        except Exception as exc:
            # Alert delivery must not fail the stock update
            logger.warning("Inventory alert to %s failed: %s", tenant_id, exc)
