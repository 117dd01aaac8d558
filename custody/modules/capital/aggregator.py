"""
Equity Aggregator

Computes an agent wallet's capital split from the ledger:

    available  = main account balance
    deployed   = sum of every subaccount balance
    total      = available + deployed

Subaccounts are discovered from both the association table and the ledger,
so a subaccount left behind by a deleted bot is still counted. A failed read
falls back to the last published value flagged stale; with no prior value
the snapshot is refused rather than reporting zero.

Author: Custody Team
Last Updated: 2026-10-18
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Set

from custody.config.settings import Settings, get_settings
from custody.domain.models.agent_wallet import AgentWallet
from custody.domain.models.capital import CapitalSnapshot, SubaccountEntry
from custody.domain.models.lifecycle import LifecycleOperation, TargetType
from custody.infrastructure.db.repositories import (
    AgentWalletRepository,
    SubaccountRepository,
    TradingBotRepository,
)
from custody.infrastructure.venue.base import LedgerQueryService, LedgerUnavailableError, SubaccountRef
from custody.modules.capital.snapshot_store import SnapshotStore
from custody.modules.lifecycle.operation_lock import OperationLockService, lock_key
from custody.shared.exceptions import AgentWalletNotFoundError, AppException, StaleSnapshotError
from custody.utils.logger import get_logger

logger = get_logger(__name__)


class EquityAggregator:
    """Read-only view of capital across an agent wallet and its subaccounts"""

    def __init__(
        self,
        agent_wallets: AgentWalletRepository,
        trading_bots: TradingBotRepository,
        subaccounts: SubaccountRepository,
        ledger: LedgerQueryService,
        locks: OperationLockService,
        store: SnapshotStore,
        settings: Optional[Settings] = None,
    ):
        self.agent_wallets = agent_wallets
        self.trading_bots = trading_bots
        self.subaccounts = subaccounts
        self.ledger = ledger
        self.locks = locks
        self.store = store
        self.settings = settings or get_settings()

    async def snapshot(self, agent_wallet_id: str) -> CapitalSnapshot:
        """
        Read the ledger and publish a fresh snapshot.

        Raises:
            AgentWalletNotFoundError: Unknown wallet
            StaleSnapshotError: A read failed and there is no prior value to fall back on
        """
        wallet = await self.agent_wallets.find_by_id(agent_wallet_id)
        if wallet is None:
            raise AgentWalletNotFoundError()

        prior = await self.store.get(wallet.id)
        now = datetime.now(timezone.utc)

        available, available_stale = await self._read_available(wallet, prior)

        associations = {row.index: row for row in await self.subaccounts.find_by_agent_wallet(wallet.id)}
        indexes = await self._discover_indexes(wallet, set(associations), prior)

        in_flight_targets = await self._in_flight_targets(wallet)
        wallet_in_flight = lock_key(TargetType.AGENT_WALLET, wallet.id) in in_flight_targets

        entries: List[SubaccountEntry] = []
        for index in indexes:
            association = associations.get(index)
            bot_id = association.trading_bot_id if association else None
            bot_in_flight = bot_id is not None and lock_key(TargetType.TRADING_BOT, bot_id) in in_flight_targets
            entries.append(await self._read_entry(
                wallet, index, bot_id, prior, now,
                in_flight=wallet_in_flight or bot_in_flight,
            ))

        snapshot = CapitalSnapshot(
            agent_wallet_id=wallet.id,
            available_balance=available,
            available_stale=available_stale,
            available_in_flight=wallet_in_flight,
            entries=tuple(entries),
            in_flight_targets=tuple(sorted(in_flight_targets)),
            last_updated=now,
        )
        await self.store.publish(snapshot)

        if not available_stale:
            await self.agent_wallets.update_cached_balance(wallet.id, available, now)

        if snapshot.is_stale:
            logger.warning(
                f"Snapshot for wallet {wallet.id} published with stale values "
                f"(available_stale={available_stale}, stale_subaccounts="
                f"{[entry.index for entry in entries if entry.stale]})"
            )
        else:
            logger.debug(
                f"Snapshot for wallet {wallet.id}: available={available} "
                f"deployed={snapshot.deployed_balance} total={snapshot.total_equity}"
            )
        return snapshot

    async def get_snapshot(self, agent_wallet_id: str, refresh: bool = False) -> CapitalSnapshot:
        """Cache-first read. A miss (or refresh=True) reads the ledger."""
        if not refresh:
            cached = await self.store.get(agent_wallet_id)
            if cached is not None:
                return cached
        return await self.snapshot(agent_wallet_id)

    async def refresh_all(self) -> Dict[str, int]:
        """Refresh every active wallet. Used by the periodic task."""
        refreshed = 0
        failed = 0
        for wallet in await self.agent_wallets.find_all_active():
            try:
                await self.snapshot(wallet.id)
                refreshed += 1
            except AppException as e:
                failed += 1
                logger.warning(f"Snapshot refresh failed for wallet {wallet.id}: {e.message}")
        logger.info(f"Snapshot refresh: {refreshed} refreshed, {failed} failed")
        return {"refreshed": refreshed, "failed": failed}

    async def refresh_after_operation(self, operation: LifecycleOperation) -> None:
        """After-operation hook: republish the split the operation changed."""
        wallet_ids = [operation.agent_wallet_id]
        if operation.target_type == TargetType.AGENT_WALLET and operation.agent_wallet_id is None:
            wallet_ids = [operation.target_id]
        if operation.context.get("new_agent_wallet_id"):
            wallet_ids.append(operation.context["new_agent_wallet_id"])

        for wallet_id in wallet_ids:
            if wallet_id is None:
                continue
            try:
                await self.snapshot(wallet_id)
            except AppException as e:
                logger.warning(f"[{operation.id}] Snapshot refresh for wallet {wallet_id} failed: {e.message}")

    # ==================== READS ====================

    async def _read_available(self, wallet: AgentWallet, prior: Optional[CapitalSnapshot]):
        try:
            return await self.ledger.query_main_balance(wallet.public_address), False
        except LedgerUnavailableError as e:
            if prior is not None:
                logger.warning(f"Main balance read failed for wallet {wallet.id}, using prior value: {e}")
                return prior.available_balance, True
            if wallet.last_synced_at is not None:
                logger.warning(f"Main balance read failed for wallet {wallet.id}, using cached value: {e}")
                return wallet.available_balance, True
            raise StaleSnapshotError(
                f"Main balance of wallet {wallet.id} could not be read and has no prior value"
            ) from e

    async def _discover_indexes(
        self,
        wallet: AgentWallet,
        associated: Set[int],
        prior: Optional[CapitalSnapshot]
    ) -> List[int]:
        indexes = set(associated)
        if prior is not None:
            # A subaccount last read as gone is only revisited if the table or ledger lists it again
            indexes.update(entry.index for entry in prior.entries if entry.exists)
        try:
            indexes.update(await self.ledger.list_subaccounts(wallet.public_address))
        except LedgerUnavailableError as e:
            logger.warning(f"Subaccount listing failed for wallet {wallet.id}; using known subaccounts: {e}")
        # Index 0 is the main account, already counted as available
        indexes.discard(0)
        return sorted(indexes)

    async def _read_entry(
        self,
        wallet: AgentWallet,
        index: int,
        bot_id: Optional[str],
        prior: Optional[CapitalSnapshot],
        now: datetime,
        in_flight: bool,
    ) -> SubaccountEntry:
        try:
            reading = await self.ledger.query_balance(SubaccountRef(agent_address=wallet.public_address, index=index))
        except LedgerUnavailableError as e:
            previous = prior.entry_for(index) if prior is not None else None
            if previous is None:
                raise StaleSnapshotError(
                    f"Subaccount {index} of wallet {wallet.id} could not be read and has no prior value"
                ) from e
            logger.warning(f"Subaccount {index} read failed for wallet {wallet.id}, using prior value: {e}")
            return previous.model_copy(update={
                "trading_bot_id": bot_id,
                "stale": True,
                "in_flight": in_flight,
            })

        return SubaccountEntry(
            index=index,
            trading_bot_id=bot_id,
            balance=reading.balance if reading.exists else Decimal("0"),
            exists=reading.exists,
            in_flight=in_flight,
            last_read_at=now,
        )

    async def _in_flight_targets(self, wallet: AgentWallet) -> Set[str]:
        keys = [lock_key(TargetType.AGENT_WALLET, wallet.id)]
        for bot in await self.trading_bots.find_by_agent_wallet(wallet.id):
            keys.append(lock_key(TargetType.TRADING_BOT, bot.id))
        return set((await self.locks.holders(keys)).keys())
