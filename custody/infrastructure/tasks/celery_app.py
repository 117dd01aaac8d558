"""
Celery Application Configuration

Celery setup for the periodic custody jobs.

Usage:
    # Start Celery worker
    celery -A custody.infrastructure.tasks.celery_app worker --loglevel=info

    # Start Celery beat (scheduler)
    celery -A custody.infrastructure.tasks.celery_app beat --loglevel=info

Author: Custody Team
Last Updated: 2026-10-18
"""

from datetime import timedelta

from celery import Celery
from celery.schedules import crontab

from custody.config.settings import get_settings

settings = get_settings()

# Initialize Celery
celery_app = Celery(
    "custody",
    broker=settings.celery_broker,
    backend=settings.celery_backend,
    include=[
        "custody.infrastructure.tasks.custody_tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution
    task_acks_late=True,  # Acknowledge after task completes
    task_reject_on_worker_lost=True,
    task_time_limit=300,  # 5 minutes max
    task_soft_time_limit=270,  # 4.5 minutes soft limit

    # Result backend
    result_expires=3600,  # Results expire after 1 hour

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    task_routes={
        "custody.infrastructure.tasks.custody_tasks.*": {"queue": "custody"},
    },

    # Beat schedule (periodic tasks)
    beat_schedule={
        "refresh-capital-snapshots": {
            "task": "custody.infrastructure.tasks.custody_tasks.refresh_snapshots_task",
            "schedule": timedelta(seconds=settings.SNAPSHOT_POLL_INTERVAL_SECONDS),
            "options": {"queue": "custody"}
        },

        "reconcile-trading-bots": {
            "task": "custody.infrastructure.tasks.custody_tasks.reconcile_bots_task",
            "schedule": timedelta(seconds=settings.RECONCILE_INTERVAL_SECONDS),
            "options": {"queue": "custody"}
        },

        "cleanup-orphaned-subaccounts": {
            "task": "custody.infrastructure.tasks.custody_tasks.cleanup_orphaned_subaccounts_task",
            "schedule": timedelta(minutes=settings.ORPHAN_CLEANUP_INTERVAL_MINUTES),
            "options": {"queue": "custody"}
        },

        # No-op unless OPERATION_ABANDON_AFTER_HOURS is set
        "abandon-stale-operations": {
            "task": "custody.infrastructure.tasks.custody_tasks.abandon_stale_operations_task",
            "schedule": crontab(minute="*/5"),
            "options": {"queue": "custody"}
        },
    }
)


if __name__ == "__main__":
    celery_app.start()
