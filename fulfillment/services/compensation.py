"""Durable log of cleanups that failed and need manual reconciliation."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.clock import utcnow
from fulfillment.models import CompensationRecord

logger = logging.getLogger(__name__)


class CompensationLog:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        kind: str,
        tenant_id: str,
        order_id: Optional[str],
        payload: dict,
        error: BaseException | str,
    ) -> None:
        """Write a compensation record. Failing to write it is logged, never raised."""
        logger.critical(
            "Compensation %s failed for order %s (tenant %s): %s",
            kind, order_id, tenant_id, error,
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(CompensationRecord(
                        kind=kind,
                        tenant_id=tenant_id,
                        order_id=order_id,
                        payload=payload,
                        error=str(error),
                        created_at=utcnow(),
                    ))
        except SQLAlchemyError:
            logger.exception("Could not persist compensation record %s for order %s", kind, order_id)

    async def pending(self, tenant_id: Optional[str] = None) -> list[CompensationRecord]:
        async with self.session_factory() as session:
            stmt = select(CompensationRecord).where(CompensationRecord.resolved.is_(False))
            if tenant_id:
                stmt = stmt.where(CompensationRecord.tenant_id == tenant_id)
            result = await session.execute(stmt.order_by(CompensationRecord.id))
            return list(result.scalars())
