"""
Custody Lifecycle Service Layer

Single entry point for the API and the background tasks: bot deletion,
account reset, agent wallet rotation, operation management (signatures,
retries, rechecks, abandonment) and capital snapshots.

Every operation-scoped call is owner-checked against the caller's external
wallet address.

Author: Custody Team
Last Updated: 2026-10-18
"""

from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from custody.domain.models.agent_wallet import AgentWallet
from custody.domain.models.capital import CapitalSnapshot
from custody.domain.models.lifecycle import (
    LifecycleOperation,
    OperationKind,
    OperationStatus,
    WithdrawPolicy,
)
from custody.domain.models.trading_bot import TradingBot
from custody.modules.bots import service as bot_service
from custody.modules.capital.aggregator import EquityAggregator
from custody.modules.lifecycle.delete_saga import (
    DeleteOutcome,
    DeleteSaga,
    outcome_to_dict,
)
from custody.modules.lifecycle.reset_saga import ResetAccountSaga
from custody.modules.lifecycle.runtime import LifecycleRuntime
from custody.modules.lifecycle.saga_base import StepwiseSaga
from custody.modules.lifecycle.wallet_rotation import WalletRotationSaga
from custody.modules.reconciliation.poller import ReconciliationPoller
from custody.modules.wallets import service as wallet_service
from custody.shared.exceptions import (
    AgentWalletNotFoundError,
    InvalidOperationStateError,
    OperationNotFoundError,
    PermissionDeniedError,
)
from custody.utils.logger import get_logger

logger = get_logger(__name__)

# An in_progress operation untouched this long is considered stalled
STALLED_AFTER = timedelta(minutes=5)


class CustodyCoordinator:
    """
    Facade over the lifecycle sagas, the equity aggregator and the
    reconciliation poller.

    Registers the aggregator refresh and the poller check as after-operation
    hooks, so every terminal outcome is reflected immediately.
    """

    def __init__(
        self,
        runtime: LifecycleRuntime,
        aggregator: EquityAggregator,
        poller: ReconciliationPoller,
    ):
        self.rt = runtime
        self.aggregator = aggregator
        self.poller = poller

        self.delete_saga = DeleteSaga(runtime)
        self.reset_saga = ResetAccountSaga(runtime)
        self.rotation_saga = WalletRotationSaga(runtime)

        runtime.after_operation.extend([
            aggregator.refresh_after_operation,
            poller.reconcile_after_operation,
        ])

    # ==================== WALLETS & BOTS ====================

    async def get_or_create_agent_wallet(self, owner_address: str) -> AgentWallet:
        return await wallet_service.get_or_create_agent_wallet(
            self.rt.agent_wallets, owner_address, self.rt.encryption
        )

    async def _active_wallet(self, owner_address: str) -> AgentWallet:
        wallet = await wallet_service.get_agent_wallet(self.rt.agent_wallets, owner_address)
        if wallet is None:
            raise AgentWalletNotFoundError("No active agent wallet for this address")
        return wallet

    async def create_trading_bot(
        self,
        owner_address: str,
        name: str,
        market: str,
        leverage: int = 1,
        is_active: bool = False
    ) -> TradingBot:
        wallet = await self.get_or_create_agent_wallet(owner_address)
        return await bot_service.create_trading_bot(
            self.rt.trading_bots, self.rt.subaccounts, self.rt.ledger, self.rt.locks,
            wallet, name=name, market=market, leverage=leverage, is_active=is_active,
        )

    async def list_trading_bots(self, owner_address: str, include_deleted: bool = False) -> List[TradingBot]:
        return await bot_service.list_trading_bots(self.rt.trading_bots, owner_address, include_deleted)

    # ==================== BOT DELETION ====================

    async def request_delete(self, bot_id: str, owner_address: str) -> DeleteOutcome:
        return await self.delete_saga.request_delete(bot_id, owner_address)

    async def confirm_delete(
        self,
        bot_id: str,
        owner_address: str,
        tx_signature: Optional[str] = None
    ) -> DeleteOutcome:
        return await self.delete_saga.confirm_delete(bot_id, tx_signature, owner_address)

    async def acknowledge_legacy_delete(self, operation_id: str, owner_address: str) -> DeleteOutcome:
        operation = await self._load_operation(operation_id, owner_address)
        self._require_kind(operation, OperationKind.DELETE)
        return await self.delete_saga.acknowledge_legacy_delete(operation)

    # ==================== RESETS ====================

    async def start_reset(
        self,
        owner_address: str,
        policy: WithdrawPolicy = WithdrawPolicy.FULL
    ) -> LifecycleOperation:
        """
        Open an account reset. Errors (busy wallet, unknown wallet) are raised
        here, before any event is streamed.
        """
        wallet = await self._active_wallet(owner_address)
        return await self.reset_saga.start(wallet, policy)

    async def start_wallet_rotation(self, owner_address: str) -> LifecycleOperation:
        """
        Open an agent wallet reset.

        Raises:
            PreconditionError: Open positions or funded subaccounts remain
        """
        wallet = await self._active_wallet(owner_address)
        return await self.rotation_saga.start(wallet)

    async def run_operation(self, operation: LifecycleOperation) -> AsyncIterator[Dict[str, Any]]:
        """Stream `{step, status}` events of a stepwise operation until it is terminal or suspended."""
        saga = self._stepwise_saga(operation)
        async for event in saga.run(operation):
            yield event

    async def request_reset(
        self,
        owner_address: str,
        policy: WithdrawPolicy = WithdrawPolicy.FULL
    ) -> AsyncIterator[Dict[str, Any]]:
        operation = await self.start_reset(owner_address, policy)
        async for event in self.run_operation(operation):
            yield event

    # ==================== OPERATION MANAGEMENT ====================

    async def submit_signature(self, operation_id: str, signed_tx: str, owner_address: str) -> Dict[str, Any]:
        operation = await self._load_operation(operation_id, owner_address)
        if operation.kind == OperationKind.DELETE:
            return outcome_to_dict(await self.delete_saga.submit_signature(operation, signed_tx))
        events = await self._stepwise_saga(operation).resume_with_signature(operation, signed_tx)
        return self._events_result(operation, events)

    async def reject_signature(
        self,
        operation_id: str,
        owner_address: str,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        operation = await self._load_operation(operation_id, owner_address)
        if operation.kind == OperationKind.DELETE:
            return outcome_to_dict(await self.delete_saga.reject_signature(operation, reason))
        events = await self._stepwise_saga(operation).resume_with_rejection(operation, reason)
        return self._events_result(operation, events)

    async def retry_operation(self, operation_id: str, owner_address: str) -> Dict[str, Any]:
        """Re-run what did not complete. Steps already done are not repeated."""
        operation = await self._load_operation(operation_id, owner_address)
        if operation.kind == OperationKind.DELETE:
            return outcome_to_dict(await self.delete_saga.retry(operation))
        events = [event async for event in self._stepwise_saga(operation).retry(operation)]
        return self._events_result(operation, events)

    async def resume_operation(self, operation_id: str, owner_address: str) -> Dict[str, Any]:
        """Continue an operation left in_progress by a process that died."""
        operation = await self._load_operation(operation_id, owner_address)
        if operation.status != OperationStatus.IN_PROGRESS:
            raise InvalidOperationStateError(f"Operation {operation.id} is {operation.status.value}, not in_progress")
        if datetime.now(timezone.utc) - operation.updated_at < STALLED_AFTER:
            raise InvalidOperationStateError(f"Operation {operation.id} is still running")

        logger.info(f"[{operation.id}] Resuming stalled {operation.kind.value} at {operation.state}")
        if operation.kind == OperationKind.DELETE:
            return outcome_to_dict(await self.delete_saga.resume(operation))
        events = [event async for event in self.run_operation(operation)]
        return self._events_result(operation, events)

    async def recheck_operation(self, operation_id: str, owner_address: str) -> Dict[str, Any]:
        """Poll the ledger again for an unconfirmed transaction. Never resubmits."""
        operation = await self._load_operation(operation_id, owner_address)
        if operation.kind == OperationKind.DELETE:
            return outcome_to_dict(await self.delete_saga.recheck(operation))
        events = await self._stepwise_saga(operation).recheck(operation)
        return self._events_result(operation, events)

    async def abandon_operation(
        self,
        operation_id: str,
        owner_address: str,
        reason: str = "Abandoned by user"
    ) -> LifecycleOperation:
        operation = await self._load_operation(operation_id, owner_address)
        return await self._saga_for(operation).abandon(operation, reason)

    async def get_operation(self, operation_id: str, owner_address: str) -> LifecycleOperation:
        return await self._load_operation(operation_id, owner_address)

    async def list_operations(self, owner_address: str, limit: int = 50) -> List[LifecycleOperation]:
        return await self.rt.operations.find_by_owner(owner_address, limit=limit)

    # ==================== CAPITAL ====================

    async def get_snapshot(self, owner_address: str, refresh: bool = False) -> CapitalSnapshot:
        wallet = await self._active_wallet(owner_address)
        return await self.aggregator.get_snapshot(wallet.id, refresh=refresh)

    # ==================== HOUSEKEEPING ====================

    async def abandon_stale_operations(self) -> int:
        """Abandon signature waits older than OPERATION_ABANDON_AFTER_HOURS (off when unset)."""
        hours = self.rt.settings.OPERATION_ABANDON_AFTER_HOURS
        if hours is None:
            return 0

        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
        abandoned = 0
        for operation in await self.rt.operations.find_awaiting_signature_before(cutoff):
            await self._saga_for(operation).abandon(operation, reason=f"No signature within {hours} hours")
            abandoned += 1

        if abandoned:
            logger.info(f"Abandoned {abandoned} operations waiting on a signature for over {hours} hours")
        return abandoned

    async def recover_stalled_operations(self) -> List[LifecycleOperation]:
        """
        Report operations a dead process left in_progress. They keep their
        locks until resumed or abandoned.
        """
        stalled = await self.rt.operations.find_by_status([OperationStatus.IN_PROGRESS])
        for operation in stalled:
            logger.warning(
                f"[{operation.id}] {operation.kind.value} on {operation.target_type.value}:{operation.target_id} "
                f"stalled at {operation.state}; resume or abandon it"
            )
        return stalled

    # ==================== HELPERS ====================

    async def _load_operation(self, operation_id: str, owner_address: str) -> LifecycleOperation:
        operation = await self.rt.operations.find_by_id(operation_id)
        if operation is None:
            raise OperationNotFoundError()
        if operation.owner_address != owner_address:
            raise PermissionDeniedError("Operation belongs to another wallet")
        return operation

    def _require_kind(self, operation: LifecycleOperation, kind: OperationKind) -> None:
        if operation.kind != kind:
            raise InvalidOperationStateError(f"Operation {operation.id} is a {operation.kind.value} operation")

    def _saga_for(self, operation: LifecycleOperation) -> Union[DeleteSaga, StepwiseSaga]:
        if operation.kind == OperationKind.DELETE:
            return self.delete_saga
        if operation.kind == OperationKind.RESET_AGENT_WALLET:
            return self.rotation_saga
        return self.reset_saga

    def _stepwise_saga(self, operation: LifecycleOperation) -> StepwiseSaga:
        saga = self._saga_for(operation)
        if not isinstance(saga, StepwiseSaga):
            raise InvalidOperationStateError(f"Operation {operation.id} is not a stepwise operation")
        return saga

    def _events_result(self, operation: LifecycleOperation, events: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "operation_id": operation.id,
            "status": operation.status.value,
            "events": events,
        }
