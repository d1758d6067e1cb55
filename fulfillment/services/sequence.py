"""
Daily order number generator.

One counter row per (tenant, business day). Numbers start at the
configured base (default 100), are strictly increasing and unique per
tenant per day, and are never reused. Each attempt is its own short
transaction doing a compare-and-swap on the counter's version; a lost race
is retried with backoff and, once the budget is spent, surfaces as
SequenceContentionError. There is no fallback to timestamp-derived numbers.
"""

import logging
from datetime import date
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.clock import business_day
from fulfillment.core.config import Settings
from fulfillment.core.exceptions import SequenceContentionError
from fulfillment.core.retry import StaleDataError, with_optimistic_retry
from fulfillment.models import SequenceCounter

logger = logging.getLogger(__name__)


class SequenceGenerator:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings):
        self.session_factory = session_factory
        self.settings = settings

    def today(self) -> date:
        return business_day(self.settings.timezone)

    @with_optimistic_retry(SequenceContentionError)
    async def next_number(self, tenant_id: str, day: Optional[date] = None) -> int:
        """Issue the next order number for the tenant's business day."""
        day = day or self.today()

        async with self.session_factory() as session:
            async with session.begin():
                counter = await session.get(SequenceCounter, (tenant_id, day))

                if counter is None:
                    first = self.settings.order_number_base
                    session.add(SequenceCounter(
                        tenant_id=tenant_id,
                        business_day=day,
                        last_number=first,
                        version=1,
                    ))
                    try:
                        await session.flush()
                    except IntegrityError as exc:
                        # Another request created the row first
                        raise StaleDataError(f"sequence {tenant_id}/{day} created concurrently") from exc
                    logger.info("Opened order sequence for %s on %s at %d", tenant_id, day, first)
                    return first

                issued = counter.last_number + 1
                result = await session.execute(
                    update(SequenceCounter)
                    .where(
                        SequenceCounter.tenant_id == tenant_id,
                        SequenceCounter.business_day == day,
                        SequenceCounter.version == counter.version,
                    )
                    .values(last_number=issued, version=counter.version + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise StaleDataError(f"sequence {tenant_id}/{day} moved past version {counter.version}")
                return issued

    async def peek(self, tenant_id: str, day: Optional[date] = None) -> Optional[int]:
        """Last issued number, or None if nothing was issued that day."""
        async with self.session_factory() as session:
            counter = await session.get(SequenceCounter, (tenant_id, day or self.today()))
            return counter.last_number if counter else None
