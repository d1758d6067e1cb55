"""
Celery Worker Configuration
Sets up Celery with Redis as message broker and result backend.

Runs the delayed escalation checks and the periodic location verification.
"""

from celery import Celery

from fulfillment.core.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    'fulfillment_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['fulfillment.tasks']  # Module containing our tasks
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Worker settings
    worker_prefetch_multiplier=1,  # Process one task at a time
    worker_concurrency=4,  # Number of worker processes

    # Result settings
    result_expires=3600,  # Results expire after 1 hour

    # Task execution settings
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,  # Requeue task if worker dies

    # Escalation checks are delayed up to the last step; keep them invisible
    # to other workers for longer than that
    broker_transport_options={'visibility_timeout': 3600},

    broker_connection_retry_on_startup=True,

    # Periodic tasks
    beat_schedule={
        'verify-active-locations': {
            'task': 'fulfillment.tasks.verify_active_locations',
            'schedule': float(settings.location_check_interval_seconds),
        },
    },
)


if __name__ == '__main__':
    celery_app.start()
