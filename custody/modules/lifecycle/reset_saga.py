"""
Reset-Account Saga

Tears down every subaccount of an agent wallet:

    closing → settling → sweeping → withdrawing → deleting → complete

Forward-only. A failed step never rolls back earlier ones; the operation
ends partial_success with the per-step log and a retry re-runs only the
failed suffix. Every step recomputes its remaining work from the ledger, so
running it again after it completed is a no-op.

Author: Custody Team
Last Updated: 2026-10-18
"""

from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List

from custody.domain.models.agent_wallet import AgentWallet
from custody.domain.models.lifecycle import (
    LifecycleOperation,
    OperationKind,
    StepError,
    StepOutcome,
    TargetType,
    WithdrawPolicy,
)
from custody.infrastructure.venue.base import IntentKind
from custody.modules.lifecycle.operation_lock import lock_key
from custody.modules.lifecycle.saga_base import StepFailed, StepRun, StepwiseSaga
from custody.shared.exceptions import ErrorCategory
from custody.utils.logger import get_logger

logger = get_logger(__name__)


class ResetAccountSaga(StepwiseSaga):
    """Reset-account flow for one agent wallet"""

    kind = OperationKind.RESET_ACCOUNT
    STEPS = ("closing", "settling", "sweeping", "withdrawing", "deleting")

    async def start(self, wallet: AgentWallet, policy: WithdrawPolicy = WithdrawPolicy.FULL) -> LifecycleOperation:
        """
        Open a reset operation, locking the wallet and every one of its bots.

        Raises:
            OperationInProgressError: If the wallet or any of its bots is busy
        """
        bots = await self.rt.trading_bots.find_by_agent_wallet(wallet.id)
        lock_keys = [lock_key(TargetType.AGENT_WALLET, wallet.id)]
        lock_keys.extend(lock_key(TargetType.TRADING_BOT, bot.id) for bot in bots)

        return await self._open_operation(
            target_type=TargetType.AGENT_WALLET,
            target_id=wallet.id,
            owner_address=wallet.owner_address,
            agent_wallet_id=wallet.id,
            lock_keys=lock_keys,
            state="idle",
            policy=policy,
        )

    async def request_reset(
        self,
        wallet: AgentWallet,
        policy: WithdrawPolicy = WithdrawPolicy.FULL
    ) -> AsyncIterator[Dict[str, Any]]:
        """Open and run a reset, streaming `{step, status}` events."""
        operation = await self.start(wallet, policy)
        async for event in self.run(operation):
            yield event

    # ==================== STEPS ====================

    async def _step_closing(self, operation: LifecycleOperation, wallet: AgentWallet) -> StepRun:
        signatures: List[str] = []
        closed = 0
        for index in await self._known_indexes(wallet):
            ref = self._ref(wallet, index)
            for position in await self.rt.ledger.list_open_positions(ref):
                await self._run_agent_intent(operation, wallet, IntentKind.CLOSE_POSITION, {
                    "agent_address": wallet.public_address,
                    "subaccount_index": index,
                    "market": position.market,
                    "base_size": position.base_size,
                    "reduce_only": True,
                }, signatures)
                closed += 1
        return StepRun(StepOutcome.OK, detail={"closed_positions": closed}, tx_signatures=signatures)

    async def _step_settling(self, operation: LifecycleOperation, wallet: AgentWallet) -> StepRun:
        signatures: List[str] = []
        settled = 0
        for index in await self._known_indexes(wallet):
            ref = self._ref(wallet, index)
            pnl = await self.rt.ledger.get_unsettled_pnl(ref)
            if pnl == 0:
                continue
            await self._run_agent_intent(operation, wallet, IntentKind.SETTLE_PNL, {
                "agent_address": wallet.public_address,
                "subaccount_index": index,
            }, signatures)
            settled += 1
        return StepRun(StepOutcome.OK, detail={"settled_subaccounts": settled}, tx_signatures=signatures)

    async def _step_sweeping(self, operation: LifecycleOperation, wallet: AgentWallet) -> StepRun:
        signatures: List[str] = []
        swept = Decimal("0")
        for index in await self._known_indexes(wallet):
            reading = await self.rt.ledger.query_balance(self._ref(wallet, index))
            if not reading.exists or self._is_dust(reading.balance):
                continue
            await self._run_agent_intent(operation, wallet, IntentKind.SWEEP_SUBACCOUNT, {
                "agent_address": wallet.public_address,
                "from_index": index,
                "to_index": 0,
                "amount": reading.balance,
            }, signatures)
            swept += reading.balance

        total = Decimal(operation.context.get("swept_total", "0")) + swept
        operation.context["swept_total"] = str(total)
        return StepRun(StepOutcome.OK, detail={"swept": str(swept)}, tx_signatures=signatures)

    async def _step_withdrawing(self, operation: LifecycleOperation, wallet: AgentWallet) -> StepRun:
        if operation.policy == WithdrawPolicy.ACCOUNT_ONLY:
            return StepRun(StepOutcome.SKIPPED, detail={"reason": "account_only reset keeps funds in the agent wallet"})

        main_balance = await self.rt.ledger.query_main_balance(wallet.public_address)
        if self._is_dust(main_balance):
            return StepRun(StepOutcome.OK, detail={"withdrawn": "0"})

        return await self._user_signed_step(operation, "withdrawing", IntentKind.WITHDRAW_TO_EXTERNAL, {
            "agent_address": wallet.public_address,
            "destination": wallet.owner_address,
            "amount": main_balance,
        }, amount=main_balance)

    async def _step_deleting(self, operation: LifecycleOperation, wallet: AgentWallet) -> StepRun:
        signatures: List[str] = []
        deleted: List[int] = []
        for index in await self._known_indexes(wallet):
            reading = await self.rt.ledger.query_balance(self._ref(wallet, index))
            if reading.exists:
                if not self._is_dust(reading.balance):
                    raise StepFailed(StepError(
                        category=ErrorCategory.PRECONDITION,
                        code="subaccount_not_empty",
                        message=f"Subaccount {index} still holds {reading.balance}",
                        retryable=True,
                    ), signatures, detail={"deleted": deleted})
                await self._run_agent_intent(operation, wallet, IntentKind.DELETE_SUBACCOUNT, {
                    "agent_address": wallet.public_address,
                    "subaccount_index": index,
                }, signatures)
            await self._forget_subaccount(wallet, index)
            deleted.append(index)

        for bot in await self.rt.trading_bots.find_by_agent_wallet(wallet.id):
            if bot.subaccount_index is not None or bot.is_active:
                await self.rt.trading_bots.deactivate_and_unlink(bot.id)

        return StepRun(StepOutcome.OK, detail={"deleted_subaccounts": deleted}, tx_signatures=signatures)

    async def _forget_subaccount(self, wallet: AgentWallet, index: int) -> None:
        """Drop the association row and any cleanup entry for a subaccount that no longer exists."""
        await self.rt.subaccounts.remove(wallet.id, index)
        for orphan in await self.rt.orphans.find_pending():
            if orphan.agent_wallet_id == wallet.id and orphan.index == index:
                await self.rt.orphans.resolve(orphan.id)
