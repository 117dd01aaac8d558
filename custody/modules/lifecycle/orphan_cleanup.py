"""
Orphaned Subaccount Cleanup

Closes subaccounts left behind by deleted bots so their existence deposit
returns to the agent wallet. Runs periodically; each entry gets a bounded
number of attempts before it is reported for a manual account reset.

Author: Custody Team
Last Updated: 2026-10-18
"""

from typing import Dict

from bson import ObjectId

from custody.domain.models.agent_wallet import AgentWallet
from custody.domain.models.lifecycle import TargetType
from custody.domain.models.subaccount import OrphanedSubaccount, OrphanStatus
from custody.infrastructure.venue.base import (
    IntentKind,
    LedgerUnavailableError,
    SignatureRequest,
    SignatureStatus,
    SubaccountRef,
    TransactionBuildError,
    VenueError,
)
from custody.modules.lifecycle.confirmation import ConfirmationOutcome
from custody.modules.lifecycle.operation_lock import lock_key
from custody.modules.lifecycle.runtime import LifecycleRuntime
from custody.shared.exceptions import OperationInProgressError
from custody.utils.logger import get_logger

logger = get_logger(__name__)


class OrphanCleanupJob:
    """Periodic closer for orphaned subaccounts"""

    def __init__(self, runtime: LifecycleRuntime):
        self.rt = runtime
        self.settings = runtime.settings

    async def run(self) -> Dict[str, int]:
        """
        One pass over the pending orphans.

        Each orphan is closed under its agent wallet's lock key, so parallel
        workers (and lifecycle operations) never close the same subaccount twice.
        """
        stats = {"resolved": 0, "deferred": 0, "failed": 0, "exhausted": 0}
        # Lock holder for this pass, distinct across workers
        pass_id = f"orphan-cleanup:{ObjectId()}"

        pending = await self.rt.orphans.find_pending()
        if not pending:
            return stats
        logger.info(f"Orphan cleanup: {len(pending)} pending subaccounts")

        for orphan in pending:
            wallet_key = lock_key(TargetType.AGENT_WALLET, orphan.agent_wallet_id)
            try:
                await self.rt.locks.acquire([wallet_key], pass_id)
            except OperationInProgressError:
                logger.debug(f"Wallet {orphan.agent_wallet_id} is locked; deferring orphan {orphan.index}")
                stats["deferred"] += 1
                continue

            try:
                # Another worker may have closed it since the pending list was read
                current = await self.rt.orphans.find_by_id(orphan.id)
                if current is None or current.status != OrphanStatus.PENDING:
                    continue
                error = await self._close(current)
            finally:
                await self.rt.locks.release([wallet_key], pass_id)

            if error is None:
                stats["resolved"] += 1
                continue

            status = await self.rt.orphans.record_failure(orphan.id, error, self.settings.ORPHAN_CLEANUP_MAX_RETRIES)
            if status == OrphanStatus.EXHAUSTED:
                stats["exhausted"] += 1
                logger.warning(
                    f"Orphaned subaccount {orphan.index} of wallet {orphan.agent_wallet_id} could not be closed "
                    f"after {self.settings.ORPHAN_CLEANUP_MAX_RETRIES} attempts ({error}); run an account reset"
                )
            else:
                stats["failed"] += 1
                logger.info(f"Orphan {orphan.id} cleanup failed, will retry: {error}")

        logger.info(f"Orphan cleanup finished: {stats}")
        return stats

    async def _close(self, orphan: OrphanedSubaccount):
        """Close one orphan. Returns None on success, otherwise the error message."""
        wallet = await self.rt.agent_wallets.find_by_id(orphan.agent_wallet_id)
        if wallet is None:
            return f"Agent wallet {orphan.agent_wallet_id} not found"

        ref = SubaccountRef(agent_address=wallet.public_address, index=orphan.index)
        try:
            reading = await self.rt.ledger.query_balance(ref)
            if not reading.exists:
                await self._forget(orphan, wallet)
                return None
            if reading.balance > self.settings.BALANCE_DUST_THRESHOLD:
                return f"Subaccount still holds {reading.balance}"

            return await self._delete_subaccount(orphan, wallet)
        except (VenueError, LedgerUnavailableError, TransactionBuildError) as e:
            return str(e)

    async def _delete_subaccount(self, orphan: OrphanedSubaccount, wallet: AgentWallet):
        operation_id = f"orphan-cleanup:{orphan.id}"
        built = await self.rt.builder.build_intent(IntentKind.DELETE_SUBACCOUNT, {
            "agent_address": wallet.public_address,
            "subaccount_index": orphan.index,
        })
        signed = await self.rt.agent_signer(wallet).sign(SignatureRequest(
            operation_id=operation_id,
            kind=IntentKind.DELETE_SUBACCOUNT,
            unsigned_tx=built.unsigned_tx,
            signer_address=wallet.public_address,
        ))
        if signed.status != SignatureStatus.SIGNED:
            return signed.reason or "Agent signer declined"

        confirmation = await self.rt.confirmer.submit(signed.signed_tx, built.confirmation_hints, operation_id)
        if confirmation.outcome == ConfirmationOutcome.FAILED:
            return str(confirmation.error)
        if confirmation.outcome == ConfirmationOutcome.POSSIBLY_PENDING:
            # Next pass sees the subaccount gone, or retries
            return f"Delete transaction {confirmation.signature} not confirmed yet"

        await self._forget(orphan, wallet)
        logger.info(f"Orphaned subaccount {orphan.index} of wallet {wallet.id} closed ({confirmation.signature})")
        return None

    async def _forget(self, orphan: OrphanedSubaccount, wallet: AgentWallet) -> None:
        await self.rt.subaccounts.remove(wallet.id, orphan.index)
        await self.rt.orphans.resolve(orphan.id)
