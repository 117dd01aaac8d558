"""
Core dependencies for FastAPI routes and background tasks.

Wires the repositories, venue clients, sagas, aggregator and poller into one
CustodyCoordinator, and resolves the caller's external wallet address.
"""

from typing import List, Optional

from fastapi import Header
from motor.motor_asyncio import AsyncIOMotorDatabase

from custody.config.settings import Settings, get_settings
from custody.infrastructure.db.repositories import (
    AgentWalletRepository,
    LifecycleOperationRepository,
    OrphanedSubaccountRepository,
    ReconciliationEventRepository,
    SubaccountRepository,
    TradingBotRepository,
)
from custody.infrastructure.venue.http_clients import (
    HttpLedgerQueryService,
    HttpTransactionBuildService,
    HttpTransactionSubmitter,
)
from custody.infrastructure.venue.signers import DeferredUserSigner
from custody.modules.capital.aggregator import EquityAggregator
from custody.modules.capital.snapshot_store import RedisSnapshotStore, SnapshotStore
from custody.modules.lifecycle.confirmation import ConfirmationPolicy, TransactionConfirmer
from custody.modules.lifecycle.operation_lock import OperationLockService
from custody.modules.lifecycle.runtime import LifecycleRuntime
from custody.modules.lifecycle.service import CustodyCoordinator
from custody.modules.reconciliation.poller import ReconciliationPoller
from custody.shared.exceptions import AuthenticationError
from custody.utils.logger import get_logger

logger = get_logger(__name__)

# Global coordinator instance
_coordinator: Optional[CustodyCoordinator] = None
_http_clients: List = []


def build_coordinator(
    db: Optional[AsyncIOMotorDatabase] = None,
    settings: Optional[Settings] = None,
    store: Optional[SnapshotStore] = None
) -> CustodyCoordinator:
    """
    Build a coordinator backed by MongoDB and the HTTP venue services.

    Args:
        db: Database (defaults to the connected application database)
        settings: Settings (defaults to the environment)
        store: Snapshot store (defaults to Redis)
    """
    settings = settings or get_settings()

    ledger = HttpLedgerQueryService(
        settings.LEDGER_SERVICE_URL, settings.VENUE_API_KEY, settings.VENUE_HTTP_TIMEOUT_SECONDS
    )
    builder = HttpTransactionBuildService(
        settings.TX_BUILD_SERVICE_URL, settings.VENUE_API_KEY, settings.VENUE_HTTP_TIMEOUT_SECONDS
    )
    submitter = HttpTransactionSubmitter(
        settings.SUBMISSION_SERVICE_URL, settings.VENUE_API_KEY, settings.VENUE_HTTP_TIMEOUT_SECONDS
    )
    _http_clients.extend([ledger, builder, submitter])

    locks = OperationLockService(db)
    runtime = LifecycleRuntime(
        agent_wallets=AgentWalletRepository(db),
        trading_bots=TradingBotRepository(db),
        subaccounts=SubaccountRepository(db),
        orphans=OrphanedSubaccountRepository(db),
        operations=LifecycleOperationRepository(db),
        locks=locks,
        ledger=ledger,
        builder=builder,
        confirmer=TransactionConfirmer(submitter, ledger, ConfirmationPolicy.from_settings(settings)),
        user_signer=DeferredUserSigner(),
        settings=settings,
    )

    aggregator = EquityAggregator(
        runtime.agent_wallets, runtime.trading_bots, runtime.subaccounts, ledger, locks,
        store or RedisSnapshotStore(settings.SNAPSHOT_CACHE_TTL_SECONDS),
        settings,
    )
    poller = ReconciliationPoller(
        runtime.trading_bots, runtime.agent_wallets, ReconciliationEventRepository(db), ledger, locks, settings,
    )
    return CustodyCoordinator(runtime, aggregator, poller)


def get_coordinator() -> CustodyCoordinator:
    """
    FastAPI dependency returning the process-wide coordinator.

    Example:
        @router.get("/operations")
        async def list_operations(coordinator: CustodyCoordinator = Depends(get_coordinator)):
            ...
    """
    global _coordinator

    if _coordinator is None:
        _coordinator = build_coordinator()
        logger.info("Custody coordinator initialized")
    return _coordinator


async def close_coordinator() -> None:
    """Close venue HTTP clients and drop the coordinator."""
    global _coordinator

    for client in _http_clients:
        await client.close()
    _http_clients.clear()
    _coordinator = None


async def get_wallet_address(
    x_wallet_address: Optional[str] = Header(default=None, alias="X-Wallet-Address")
) -> str:
    """
    Caller's external wallet address.

    Session establishment happens upstream; this service trusts the header.

    Raises:
        AuthenticationError: If the header is missing
    """
    if not x_wallet_address or not x_wallet_address.strip():
        raise AuthenticationError()
    return x_wallet_address.strip()
