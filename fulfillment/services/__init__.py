"""
                        Services Module

Contains the fulfillment business logic, wired together into one container.
Providers with Mock (development) and Real (production) implementations are
picked by ENV_MODE through their own factories.

Services:
    - sequence: daily order numbers
    - inventory: stock ledger
    - payment: provider strategies and the orchestration adapter
    - orders: order aggregate and state machine
    - escalation: stalled-order monitor
    - location: location compliance
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.config import Settings, get_settings
from fulfillment.services.catalog import ProductCatalog, TenantRegistry
from fulfillment.services.compensation import CompensationLog
from fulfillment.services.escalation import (
    EscalationMonitor,
    EscalationScheduler,
    get_escalation_scheduler,
)
from fulfillment.services.inventory import InventoryLedger
from fulfillment.services.location import LocationComplianceChecker
from fulfillment.services.notifications import (
    BaseNotificationService,
    get_notification_service,
    reset_notification_service,
)
from fulfillment.services.orders import OrderService
from fulfillment.services.payment import BasePaymentService, get_payment_service, reset_payment_service
from fulfillment.services.payment.adapter import PaymentOrchestrator
from fulfillment.services.sequence import SequenceGenerator


@dataclass
class Fulfillment:
    session_factory: async_sessionmaker[AsyncSession]
    settings: Settings
    tenants: TenantRegistry
    catalog: ProductCatalog
    sequence: SequenceGenerator
    inventory: InventoryLedger
    payments: PaymentOrchestrator
    escalation: EscalationMonitor
    orders: OrderService
    locations: LocationComplianceChecker
    compensations: CompensationLog
    provider: BasePaymentService
    notifier: BaseNotificationService
    scheduler: EscalationScheduler


def build_fulfillment(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
    provider: Optional[BasePaymentService] = None,
    notifier: Optional[BaseNotificationService] = None,
    scheduler: Optional[EscalationScheduler] = None,
) -> Fulfillment:
    """Wire every service over one session factory."""
    settings = settings or get_settings()
    provider = provider or get_payment_service()
    notifier = notifier or get_notification_service()
    scheduler = scheduler or get_escalation_scheduler()

    compensations = CompensationLog(session_factory)
    tenants = TenantRegistry(session_factory, settings)
    catalog = ProductCatalog(session_factory)
    sequence = SequenceGenerator(session_factory, settings)
    inventory = InventoryLedger(session_factory, settings, notifier, compensations)
    payments = PaymentOrchestrator(session_factory, settings, provider)
    escalation = EscalationMonitor(session_factory, settings, notifier, scheduler)
    orders = OrderService(
        session_factory, settings, tenants, catalog, sequence,
        inventory, payments, escalation, notifier, compensations,
    )
    locations = LocationComplianceChecker(session_factory, settings, tenants, orders, notifier)

    return Fulfillment(
        session_factory=session_factory,
        settings=settings,
        tenants=tenants,
        catalog=catalog,
        sequence=sequence,
        inventory=inventory,
        payments=payments,
        escalation=escalation,
        orders=orders,
        locations=locations,
        compensations=compensations,
        provider=provider,
        notifier=notifier,
        scheduler=scheduler,
    )


@lru_cache()
def get_fulfillment() -> Fulfillment:
    """Process-wide container bound to the application's database."""
    from fulfillment.database import async_session_maker

    return build_fulfillment(async_session_maker)


def reset_fulfillment() -> None:
    """Drop the cached container and the providers it was built with."""
    get_fulfillment.cache_clear()
    get_escalation_scheduler.cache_clear()
    reset_payment_service()
    reset_notification_service()


__all__ = ["Fulfillment", "build_fulfillment", "get_fulfillment", "reset_fulfillment"]
