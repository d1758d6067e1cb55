"""
Location Compliance Checker

A tenant announces where the truck will be; the truck reports its actual
position. When the reported location differs from the announced one and
the last report is older than the grace period (default 15 minutes, a
missing report counts as stale), the tenant is in breach:

    - the announced location is marked inactive
    - the tenant is closed for new orders
    - every pending or preparing order at that location is cancelled
      through the order state machine (reason ``location_mismatch``),
      which releases stock and refunds captured payments
    - each affected customer is told why

A Celery beat task runs ``verify_all`` for every open tenant.
"""

import logging
import math
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.clock import ensure_aware, utcnow
from fulfillment.core.config import Settings
from fulfillment.core.exceptions import FulfillmentError, InvalidTransitionError
from fulfillment.models import OrderStatus, Tenant, TruckLocation
from fulfillment.services.catalog import TenantRegistry
from fulfillment.services.notifications import (
    BaseNotificationService,
    NotificationChannel,
    NotificationPriority,
)
from fulfillment.services.orders import OrderService

logger = logging.getLogger(__name__)

LOCATION_MISMATCH = "location_mismatch"
AFFECTED_STATUSES = [OrderStatus.PENDING, OrderStatus.PREPARING]


class LocationComplianceChecker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        tenants: TenantRegistry,
        orders: OrderService,
        notifier: BaseNotificationService,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.tenants = tenants
        self.orders = orders
        self.notifier = notifier

    async def announce(self, tenant_id: str, location_id: str) -> Tenant:
        """Set where the truck is expected to serve."""
        await self.tenants.get_location(tenant_id, location_id)
        return await self.tenants.update_tenant(tenant_id, announced_location_id=location_id)

    async def report_position(self, tenant_id: str, location_id: str, at: Optional[datetime] = None) -> Tenant:
        """Record the truck's current location."""
        at = at or utcnow()
        tenant = await self.tenants.update_tenant(
            tenant_id, current_location_id=location_id, last_location_update=at,
        )
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(TruckLocation)
                    .where(
                        TruckLocation.tenant_id == tenant_id,
                        TruckLocation.id == location_id,
                        TruckLocation.not_at_location_since.is_not(None),
                    )
                    .values(is_active=True, not_at_location_since=None)
                    .execution_options(synchronize_session=False)
                )
        logger.debug("Tenant %s reported position %s", tenant_id, location_id)
        return tenant

    def minutes_since_report(self, tenant: Tenant, now: datetime) -> float:
        last = ensure_aware(tenant.last_location_update)
        if last is None:
            return math.inf
        return (now - last).total_seconds() / 60

    async def verify(self, tenant_id: str, expected_location_id: str, now: Optional[datetime] = None) -> bool:
        """
        Check that the truck is where it said it would be.

        Returns True when compliant (or still within the grace period).
        """
        now = now or utcnow()
        tenant = await self.tenants.get_tenant(tenant_id)

        if tenant.current_location_id == expected_location_id:
            return True
        stale_minutes = self.minutes_since_report(tenant, now)
        if stale_minutes <= self.settings.location_grace_minutes:
            return True

        logger.warning(
            "Tenant %s not at %s (reported %s, %.0f min ago); closing and cancelling orders",
            tenant_id, expected_location_id, tenant.current_location_id, stale_minutes,
        )
        await self._mark_absent(tenant_id, expected_location_id, now)

        affected = await self.orders.list_orders(
            tenant_id, statuses=AFFECTED_STATUSES, location_id=expected_location_id, limit=None,
        )
        cancelled = []
        for order in affected:
            try:
                await self.orders.cancel(tenant_id, order.id, reason=LOCATION_MISMATCH)
            except InvalidTransitionError:
                logger.info("Order %s moved on before it could be cancelled", order.id)
                continue
            except FulfillmentError as exc:
                logger.error("Order %s not cancelled after location mismatch: %s", order.id, exc)
                continue
            cancelled.append(order)
            await self._send(
                order.customer_phone, NotificationChannel.SMS,
                "Order cancelled",
                f"Sorry {order.customer_name}, the truck is not at the announced location. "
                f"Order #{order.order_number} was cancelled and any payment will be refunded.",
                {"order_id": order.id},
            )

        await self._send(
            tenant_id, NotificationChannel.PUSH,
            "Location check failed",
            f"Not at the announced location; {len(cancelled)} order(s) cancelled and ordering closed",
            {"location_id": expected_location_id, "cancelled": len(cancelled)},
        )
        return False

    async def verify_all(self) -> dict[str, bool]:
        """Verify every open tenant that has announced a location."""
        results = {}
        for tenant in await self.tenants.list_open_tenants():
            if not tenant.announced_location_id:
                continue
            try:
                results[tenant.id] = await self.verify(tenant.id, tenant.announced_location_id)
            except FulfillmentError as exc:
                logger.error("Location check for %s failed: %s", tenant.id, exc)
        return results

    async def _mark_absent(self, tenant_id: str, location_id: str, now: datetime) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(TruckLocation)
                    .where(TruckLocation.tenant_id == tenant_id, TruckLocation.id == location_id)
                    .values(is_active=False, not_at_location_since=now)
                    .execution_options(synchronize_session=False)
                )
                await session.execute(
                    update(Tenant)
                    .where(Tenant.id == tenant_id)
                    .values(is_open=False)
                    .execution_options(synchronize_session=False)
                )

    async def _send(self, recipient, channel, title, body, data):
        try:
            result = await self.notifier.notify(recipient, channel, title, body, NotificationPriority.HIGH, data)
            if not result.success:
                logger.warning("Location notice to %s not delivered: %s", recipient, result.error_message)
        except Exception as exc:
            logger.warning("Location notice to %s failed: %s", recipient, exc)
