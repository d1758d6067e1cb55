"""
Tenant registry and product catalog.

Thin read/write access to tenants, their announced truck locations and
their products. The fulfillment services only read through here; the
write helpers exist for onboarding and for tests.
"""

import logging
from datetime import timedelta
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.clock import utcnow
from fulfillment.core.config import Settings
from fulfillment.core.exceptions import LocationNotFoundError, TenantNotFoundError
from fulfillment.models import Product, Tenant, TruckLocation

logger = logging.getLogger(__name__)


class TenantRegistry:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings):
        self.session_factory = session_factory
        self.settings = settings

    async def get_tenant(self, tenant_id: str) -> Tenant:
        async with self.session_factory() as session:
            tenant = await session.get(Tenant, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Unknown tenant {tenant_id}")
        return tenant

    async def register_tenant(self, tenant_id: str, name: str, **fields) -> Tenant:
        """Create a tenant; the fee-free trial starts now unless ``trial_ends_at`` is given."""
        fields.setdefault("trial_ends_at", utcnow() + timedelta(days=self.settings.trial_days))
        tenant = Tenant(id=tenant_id, name=name, **fields)
        async with self.session_factory() as session:
            async with session.begin():
                session.add(tenant)
        logger.info("Registered tenant %s (%s)", tenant_id, name)
        return tenant

    async def update_tenant(self, tenant_id: str, **values) -> Tenant:
        async with self.session_factory() as session:
            async with session.begin():
                tenant = await session.get(Tenant, tenant_id)
                if tenant is None:
                    raise TenantNotFoundError(f"Unknown tenant {tenant_id}")
                for key, value in values.items():
                    setattr(tenant, key, value)
        return tenant

    async def list_open_tenants(self) -> list[Tenant]:
        async with self.session_factory() as session:
            result = await session.execute(select(Tenant).where(Tenant.is_open.is_(True)))
            return list(result.scalars())

    async def add_location(
        self,
        tenant_id: str,
        location_id: str,
        name: str,
        address: Optional[str] = None,
    ) -> TruckLocation:
        location = TruckLocation(tenant_id=tenant_id, id=location_id, name=name, address=address, is_active=True)
        async with self.session_factory() as session:
            async with session.begin():
                session.add(location)
        return location

    async def get_location(self, tenant_id: str, location_id: str) -> TruckLocation:
        async with self.session_factory() as session:
            location = await session.get(TruckLocation, (tenant_id, location_id))
        if location is None:
            raise LocationNotFoundError(f"Unknown location {location_id} for tenant {tenant_id}")
        return location


class ProductCatalog:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_product(self, tenant_id: str, product_id: str) -> Optional[Product]:
        async with self.session_factory() as session:
            return await session.get(Product, (tenant_id, product_id))

    async def get_products(self, tenant_id: str, product_ids: Iterable[str]) -> dict[str, Product]:
        ids = set(product_ids)
        if not ids:
            return {}
        async with self.session_factory() as session:
            result = await session.execute(
                select(Product).where(Product.tenant_id == tenant_id, Product.id.in_(ids))
            )
            return {product.id: product for product in result.scalars()}

    async def upsert_product(
        self,
        tenant_id: str,
        product_id: str,
        name: str,
        price: int,
        vat_rate: Optional[float] = None,
        available: bool = True,
    ) -> Product:
        async with self.session_factory() as session:
            async with session.begin():
                product = await session.get(Product, (tenant_id, product_id))
                if product is None:
                    product = Product(tenant_id=tenant_id, id=product_id)
                    session.add(product)
                product.name = name
                product.price = price
                product.vat_rate = vat_rate
                product.available = available
        return product
