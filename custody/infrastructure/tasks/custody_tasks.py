"""
Custody Tasks

Celery tasks for the periodic custody jobs: capital snapshots,
reconciliation, orphaned subaccount cleanup and stale-operation abandonment.

Author: Custody Team
Last Updated: 2026-10-18
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, TypeVar

from celery import shared_task

from custody.config.database import close_mongodb_connection, connect_to_mongodb
from custody.core.dependencies import build_coordinator, close_coordinator
from custody.modules.lifecycle.orphan_cleanup import OrphanCleanupJob
from custody.modules.lifecycle.service import CustodyCoordinator
from custody.utils.cache import close_redis_client
from custody.utils.logger import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)

T = TypeVar("T")


def run_async(job: Callable[[CustodyCoordinator], Awaitable[T]]) -> T:
    """
    Run an async job in a fresh event loop.

    Motor, redis and httpx clients are bound to the loop that created them,
    so every task connects and disconnects inside its own loop.
    """
    async def run() -> T:
        await connect_to_mongodb()
        try:
            return await job(build_coordinator())
        finally:
            await close_coordinator()
            await close_redis_client()
            await close_mongodb_connection()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(run())
    finally:
        loop.close()


@shared_task(name="custody.infrastructure.tasks.custody_tasks.refresh_snapshots_task")
def refresh_snapshots_task() -> Dict[str, int]:
    """Publish a fresh capital snapshot for every active agent wallet."""
    return run_async(lambda coordinator: coordinator.aggregator.refresh_all())


@shared_task(name="custody.infrastructure.tasks.custody_tasks.reconcile_bots_task")
def reconcile_bots_task() -> Dict[str, int]:
    """Compare every active bot's cached stats with the ledger."""
    return run_async(lambda coordinator: coordinator.poller.run_cycle())


@shared_task(name="custody.infrastructure.tasks.custody_tasks.cleanup_orphaned_subaccounts_task")
def cleanup_orphaned_subaccounts_task() -> Dict[str, int]:
    """Close subaccounts left behind by deleted bots."""
    return run_async(lambda coordinator: OrphanCleanupJob(coordinator.rt).run())


@shared_task(name="custody.infrastructure.tasks.custody_tasks.abandon_stale_operations_task")
def abandon_stale_operations_task() -> Dict[str, Any]:
    """Abandon signature waits older than OPERATION_ABANDON_AFTER_HOURS."""
    abandoned = run_async(lambda coordinator: coordinator.abandon_stale_operations())
    return {"abandoned": abandoned}
