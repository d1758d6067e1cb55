"""
Escalation Monitor

Watches new orders for stalled processing. Arming an order records an
active EscalationAlert and schedules one check per configured delay
(default 5, 10 and 15 minutes). Each check:

    - does nothing if the alert is inactive or acknowledged
    - deactivates the alert if the order has left the watched status
    - otherwise fires its step once, with rising severity
      (warning, high, critical); the last step also tells the customer
      about the delay

The alert's step index only moves forward, so a check that is delivered
twice or late never fires again. Checks never change the order.

Schedulers:
    CeleryEscalationScheduler   durable delayed tasks on the Redis broker (production)
    AsyncioEscalationScheduler  in-process timers (development)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.clock import utcnow
from fulfillment.core.config import Settings, get_settings
from fulfillment.core.exceptions import EscalationAlertNotFoundError
from fulfillment.models import EscalationAlert, EscalationSeverity, Order
from fulfillment.services.notifications import (
    BaseNotificationService,
    NotificationChannel,
    NotificationPriority,
)

logger = logging.getLogger(__name__)

SEVERITY_LADDER = [EscalationSeverity.WARNING, EscalationSeverity.HIGH, EscalationSeverity.CRITICAL]


# =============================================================================
# SCHEDULERS
# =============================================================================

class EscalationScheduler(ABC):
    """Delivers ``monitor.check(tenant_id, order_id, step)`` after a delay."""

    @abstractmethod
    def schedule(self, tenant_id: str, order_id: str, step: int, delay_seconds: float) -> None:
        pass

    def cancel(self, order_id: str) -> None:
        """Drop pending checks if the backend supports it; disarmed checks are no-ops anyway."""


class CeleryEscalationScheduler(EscalationScheduler):
    def schedule(self, tenant_id: str, order_id: str, step: int, delay_seconds: float) -> None:
        from fulfillment.tasks import check_order_escalation

        check_order_escalation.apply_async(args=[tenant_id, order_id, step], countdown=delay_seconds)
        logger.debug("Queued escalation step %d for %s in %.0fs", step, order_id, delay_seconds)


class AsyncioEscalationScheduler(EscalationScheduler):
    """Timers on the running event loop. Lost on restart."""

    def __init__(self):
        self._monitor: Optional["EscalationMonitor"] = None
        self._tasks: dict[str, set[asyncio.Task]] = {}

    def attach(self, monitor: "EscalationMonitor") -> None:
        self._monitor = monitor

    def schedule(self, tenant_id: str, order_id: str, step: int, delay_seconds: float) -> None:
        task = asyncio.get_running_loop().create_task(self._run(tenant_id, order_id, step, delay_seconds))
        self._tasks.setdefault(order_id, set()).add(task)
        task.add_done_callback(lambda t: self._forget(order_id, t))

    async def _run(self, tenant_id, order_id, step, delay_seconds):
        await asyncio.sleep(delay_seconds)
        if self._monitor is None:
            logger.warning("Escalation check for %s dropped: no monitor attached", order_id)
            return
        try:
            await self._monitor.check(tenant_id, order_id, step)
        except Exception:
            logger.exception("Escalation check %d for %s failed", step, order_id)

    def _forget(self, order_id, task):
        tasks = self._tasks.get(order_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                self._tasks.pop(order_id, None)

    def cancel(self, order_id: str) -> None:
        for task in self._tasks.pop(order_id, set()):
            task.cancel()

    async def shutdown(self) -> None:
        tasks = [task for group in self._tasks.values() for task in group]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


@lru_cache()
def get_escalation_scheduler() -> EscalationScheduler:
    """Celery in staging/production, in-process timers in development."""
    settings = get_settings()
    if settings.use_real_services:
        logger.info("Escalation Scheduler: Using CeleryEscalationScheduler")
        return CeleryEscalationScheduler()
    logger.info("Escalation Scheduler: Using AsyncioEscalationScheduler (development mode)")
    return AsyncioEscalationScheduler()


# =============================================================================
# MONITOR
# =============================================================================

class EscalationMonitor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        notifier: BaseNotificationService,
        scheduler: EscalationScheduler,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.notifier = notifier
        self.scheduler = scheduler
        if isinstance(scheduler, AsyncioEscalationScheduler):
            scheduler.attach(self)

    @staticmethod
    def severity_for(step: int, steps: int) -> EscalationSeverity:
        if step >= steps - 1:
            return EscalationSeverity.CRITICAL
        return SEVERITY_LADDER[min(step, len(SEVERITY_LADDER) - 1)]

    async def arm(self, order: Order) -> bool:
        """Start watching an order in its current status. Returns False if already armed."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(EscalationAlert(
                        order_id=order.id,
                        tenant_id=order.tenant_id,
                        watched_status=order.status,
                        step_index=-1,
                        acknowledged=False,
                        active=True,
                        armed_at=utcnow(),
                    ))
        except IntegrityError:
            logger.debug("Escalation for %s already armed", order.id)
            return False

        for step, minutes in enumerate(self.settings.escalation_delays):
            self.scheduler.schedule(order.tenant_id, order.id, step, minutes * 60)
        logger.info("Armed escalation for order %s (%s)", order.id, order.status.value)
        return True

    async def get_alert(self, order_id: str) -> Optional[EscalationAlert]:
        async with self.session_factory() as session:
            return await session.get(EscalationAlert, order_id)

    async def check(self, tenant_id: str, order_id: str, step: int) -> Optional[EscalationSeverity]:
        """Run one scheduled check. Returns the severity fired, or None."""
        steps = len(self.settings.escalation_delays)

        async with self.session_factory() as session:
            async with session.begin():
                alert = await session.get(EscalationAlert, order_id)
                if alert is None or alert.tenant_id != tenant_id:
                    return None
                if not alert.active or alert.acknowledged:
                    return None

                order = await session.get(Order, order_id)
                if order is None or order.status != alert.watched_status:
                    await session.execute(
                        update(EscalationAlert)
                        .where(EscalationAlert.order_id == order_id, EscalationAlert.active.is_(True))
                        .values(active=False, deactivated_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                    logger.debug("Order %s moved on; escalation deactivated", order_id)
                    return None

                if step <= alert.step_index:
                    return None

                severity = self.severity_for(step, steps)
                result = await session.execute(
                    update(EscalationAlert)
                    .where(
                        EscalationAlert.order_id == order_id,
                        EscalationAlert.step_index == alert.step_index,
                        EscalationAlert.active.is_(True),
                        EscalationAlert.acknowledged.is_(False),
                    )
                    .values(step_index=step, severity=severity, last_fired_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    # A concurrent check or acknowledgement got there first
                    return None

        logger.warning(
            "Order %s (#%d, tenant %s) stalled in %s: escalation step %d (%s)",
            order_id, order.order_number, tenant_id, order.status.value, step, severity.value,
        )
        await self._notify(order, step, steps, severity)
        return severity

    async def disarm(self, order_id: str) -> bool:
        """Stop watching an order. Safe to call any number of times."""
        self.scheduler.cancel(order_id)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(EscalationAlert)
                    .where(EscalationAlert.order_id == order_id, EscalationAlert.active.is_(True))
                    .values(active=False, deactivated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    async def acknowledge(self, tenant_id: str, order_id: str) -> EscalationAlert:
        """The truck has seen the alert; no further steps fire."""
        async with self.session_factory() as session:
            async with session.begin():
                alert = await session.get(EscalationAlert, order_id)
                if alert is None or alert.tenant_id != tenant_id:
                    raise EscalationAlertNotFoundError(f"No escalation for order {order_id}")
                if not alert.acknowledged:
                    alert.acknowledged = True
                    alert.acknowledged_at = utcnow()
        self.scheduler.cancel(order_id)
        logger.info("Escalation for %s acknowledged", order_id)
        return alert

    async def _notify(self, order: Order, step: int, steps: int, severity: EscalationSeverity) -> None:
        minutes = self.settings.escalation_delays[step]
        messages = [
            (order.tenant_id, NotificationChannel.PUSH,
             "Order waiting",
             f"Order #{order.order_number} has been waiting {minutes} minutes"),
        ]
        if step >= 1:
            messages[0] = (
                order.tenant_id, NotificationChannel.PUSH,
                "Order not processed",
                f"Order #{order.order_number} is still not processed after {minutes} minutes",
            )
        if step == steps - 1:
            messages.append((
                order.customer_phone, NotificationChannel.SMS,
                "Your order is delayed",
                f"Sorry {order.customer_name}, order #{order.order_number} is taking longer than expected",
            ))
            messages.append((
                self.settings.platform_admin_recipient, NotificationChannel.PUSH,
                "Stalled order",
                f"Tenant {order.tenant_id}: order #{order.order_number} unprocessed for {minutes} minutes",
            ))

        for recipient, channel, title, body in messages:
            try:
                result = await self.notifier.notify(
                    recipient, channel, title, body,
                    NotificationPriority.HIGH,
                    {"order_id": order.id, "step": step, "severity": severity.value},
                )
                if not result.success:
                    logger.warning("Escalation notice to %s not delivered: %s", recipient, result.error_message)
            except Exception as exc:
                logger.warning("Escalation notice to %s failed: %s", recipient, exc)
