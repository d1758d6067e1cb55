"""
Celery Tasks
Background tasks for the fulfillment services.

Each task runs its coroutine on a fresh event loop with its own engine
(NullPool), so no connection is shared across loops or worker processes.
"""

import asyncio
import logging
import time
from datetime import datetime

from fulfillment.celery_worker import celery_app
from fulfillment.core.config import get_settings
from fulfillment.database import make_engine, make_session_factory
from fulfillment.services import build_fulfillment
from fulfillment.services.escalation import CeleryEscalationScheduler

logger = logging.getLogger(__name__)


def _run(job):
    """Run ``job(fulfillment)`` on a private engine and event loop."""

    async def runner():
        settings = get_settings()
        engine = make_engine(settings.database_url, echo=settings.sql_echo, pooled=False)
        try:
            services = build_fulfillment(
                make_session_factory(engine),
                settings=settings,
                scheduler=CeleryEscalationScheduler(),
            )
            return await job(services)
        finally:
            await engine.dispose()

    return asyncio.run(runner())


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    retry_backoff=True,
    acks_late=True,
)
def check_order_escalation(self, tenant_id: str, order_id: str, step: int) -> dict:
    """
    Run one escalation step for an order.

    Args:
        tenant_id: Owning tenant
        order_id: Watched order
        step: Index into the configured escalation delays

    Returns:
        dict: Severity fired, if any
    """
    task_id = self.request.id
    start_time = time.time()

    try:
        severity = _run(lambda f: f.escalation.check(tenant_id, order_id, step))
    except Exception as exc:
        logger.exception("Task %s: escalation step %d for %s failed", task_id, step, order_id)
        raise self.retry(exc=exc)

    elapsed = round(time.time() - start_time, 3)
    logger.info(
        "Task %s: escalation step %d for %s -> %s in %ss",
        task_id, step, order_id, severity.value if severity else "no-op", elapsed,
    )
    return {
        'order_id': order_id,
        'step': step,
        'severity': severity.value if severity else None,
        'processing_time_seconds': elapsed,
    }


@celery_app.task(bind=True, max_retries=1, default_retry_delay=30)
def verify_active_locations(self) -> dict:
    """Periodic location compliance check for all open tenants."""
    try:
        results = _run(lambda f: f.locations.verify_all())
    except Exception as exc:
        logger.exception("Location verification run failed")
        raise self.retry(exc=exc)

    failed = sorted(tenant for tenant, ok in results.items() if not ok)
    if failed:
        logger.warning("Location verification closed tenants: %s", failed)
    return {
        'checked': len(results),
        'failed': failed,
        'timestamp': datetime.now().isoformat(),
    }


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }
