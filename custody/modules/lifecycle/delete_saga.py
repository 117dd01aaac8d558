"""
Bot Delete Saga

Deleting a trading bot with funds is never one irreversible step:
build sweep → user signs → submit → confirm → finalize. Finalize
(confirm_delete) is idempotent, keyed by the sweep transaction signature.

States:
    requested → normal_delete_attempted → {deleted | legacy_warning | sweep_required}
    sweep_required → awaiting_signature → confirming → {deleted | failed}

Author: Custody Team
Last Updated: 2026-10-18
"""

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, ClassVar, Dict, Optional, Union

from custody.domain.models.agent_wallet import AgentWallet
from custody.domain.models.lifecycle import (
    LifecycleOperation,
    OperationKind,
    OperationStatus,
    StepOutcome,
    TargetType,
)
from custody.domain.models.subaccount import OrphanedSubaccount
from custody.domain.models.trading_bot import TradingBot
from custody.infrastructure.venue.base import (
    IntentKind,
    LedgerUnavailableError,
    SignatureStatus,
    TransactionStatus,
)
from custody.modules.lifecycle.confirmation import ConfirmationOutcome, ConfirmationResult
from custody.modules.lifecycle.error_classifier import (
    ambiguous_confirmation_error,
    classify_error,
    signer_error,
)
from custody.modules.lifecycle.operation_lock import lock_key
from custody.modules.lifecycle.saga_base import STEP_ERRORS, SagaBase
from custody.shared.exceptions import (
    InvalidOperationStateError,
    LedgerReadError,
    OperationInProgressError,
    PermissionDeniedError,
    PreconditionError,
    TradingBotNotFoundError,
)
from custody.utils.logger import get_logger

logger = get_logger(__name__)


# ==================== OUTCOMES ====================

@dataclass(frozen=True)
class Deleted:
    outcome: ClassVar[str] = "deleted"
    bot_id: str
    operation_id: Optional[str] = None
    tx_signature: Optional[str] = None


@dataclass(frozen=True)
class LegacyWarning:
    """Funds may sit at an address this service cannot sweep; needs explicit acknowledgement."""
    outcome: ClassVar[str] = "legacy_warning"
    bot_id: str
    operation_id: str
    legacy_address: str
    message: str


@dataclass(frozen=True)
class SweepRequired:
    outcome: ClassVar[str] = "sweep_required"
    bot_id: str
    operation_id: str
    balance: Decimal
    unsigned_tx: str
    signer_address: str


@dataclass(frozen=True)
class DeleteFailed:
    """Bot record untouched. status is 'failed', or 'unknown' when confirmation was ambiguous."""
    outcome: ClassVar[str] = "failed"
    bot_id: str
    reason: str
    operation_id: Optional[str] = None
    status: str = OperationStatus.FAILED.value


DeleteOutcome = Union[Deleted, LegacyWarning, SweepRequired, DeleteFailed]


def outcome_to_dict(outcome: DeleteOutcome) -> Dict[str, Any]:
    data = asdict(outcome)
    if "balance" in data:
        data["balance"] = str(data["balance"])
    return {"outcome": outcome.outcome, **data}


# ==================== SAGA ====================

class DeleteSaga(SagaBase):
    """Bot delete flow"""

    kind = OperationKind.DELETE

    SWEEP_STEP = "sweep"

    async def _load_bot(self, bot_id: str, owner_address: Optional[str] = None) -> TradingBot:
        bot = await self.rt.trading_bots.find_by_id(bot_id)
        if bot is None:
            raise TradingBotNotFoundError()
        if owner_address is not None and bot.owner_address != owner_address:
            raise PermissionDeniedError("Trading bot belongs to another wallet")
        return bot

    async def request_delete(self, bot_id: str, owner_address: Optional[str] = None) -> DeleteOutcome:
        """
        Start deleting a bot.

        Raises:
            TradingBotNotFoundError: Unknown or already deleted bot
            OperationInProgressError: Another operation owns the bot
            PreconditionError: The bot's subaccount still has open positions
            LedgerReadError: The subaccount could not be read (nothing changed)
        """
        bot = await self._load_bot(bot_id, owner_address)
        if bot.is_deleted:
            raise TradingBotNotFoundError("Trading bot is already deleted")

        operation = await self._open_operation(
            target_type=TargetType.TRADING_BOT,
            target_id=bot.id,
            owner_address=bot.owner_address,
            agent_wallet_id=bot.agent_wallet_id,
            lock_keys=[lock_key(TargetType.TRADING_BOT, bot.id)],
            state="requested",
        )
        return await self._attempt(operation, bot)

    async def retry(self, operation: LifecycleOperation) -> DeleteOutcome:
        """Run a failed delete again from the top; balances are re-read from the ledger."""
        if operation.status != OperationStatus.FAILED:
            raise InvalidOperationStateError(f"Operation {operation.id} is {operation.status.value}; only failed deletes can be retried")
        bot = await self._load_bot(operation.target_id)
        if bot.is_deleted:
            raise TradingBotNotFoundError("Trading bot is already deleted")
        await self._reopen(operation, frozenset({OperationStatus.FAILED}))
        return await self._attempt(operation, bot)

    async def resume(self, operation: LifecycleOperation) -> DeleteOutcome:
        """
        Pick up a delete left in_progress by a dead process.

        The attempt is re-derived from the ledger: a sweep that already landed
        shows up as an empty subaccount and the bot is finalized without a
        second sweep.
        """
        if operation.status != OperationStatus.IN_PROGRESS:
            raise InvalidOperationStateError(f"Operation {operation.id} is {operation.status.value}, not in_progress")
        bot = await self._load_bot(operation.target_id)
        if bot.is_deleted:
            operation.record_step("delete_record", StepOutcome.OK, detail={"tx_signature": bot.delete_tx_signature})
            operation.transition("deleted")
            await self._finish(operation, OperationStatus.SUCCESS)
            return Deleted(bot_id=bot.id, operation_id=operation.id, tx_signature=bot.delete_tx_signature)

        operation.pending_signature = None
        logger.info(f"[{operation.id}] Resuming stalled delete from state {operation.state}")
        return await self._attempt(operation, bot)

    async def _attempt(self, operation: LifecycleOperation, bot: TradingBot) -> DeleteOutcome:
        operation.transition("normal_delete_attempted")
        await self._save(operation)

        if not bot.has_subaccount:
            if bot.is_legacy:
                return await self._legacy_warning(operation, bot)
            await self._finalize(bot, tx_signature=None, wallet=None, subaccount_exists=False)
            operation.record_step("delete_record", StepOutcome.OK)
            operation.transition("deleted")
            await self._finish(operation, OperationStatus.SUCCESS)
            return Deleted(bot_id=bot.id, operation_id=operation.id)

        wallet = await self._load_wallet(bot.agent_wallet_id)
        ref = self._ref(wallet, bot.subaccount_index)

        try:
            reading = await self.rt.ledger.query_balance(ref)
            positions = await self.rt.ledger.list_open_positions(ref) if reading.exists else []
        except LedgerUnavailableError as e:
            await self._abort(operation, classify_error(e).message)
            raise LedgerReadError(f"Could not read subaccount {ref.index}: {e}") from e

        if positions:
            await self._abort(operation, "Subaccount has open positions")
            raise PreconditionError(
                "Close the bot's open positions before deleting it",
                details={"open_positions": [position.market for position in positions]},
            )

        if not reading.exists or self._is_dust(reading.balance):
            await self._finalize(bot, tx_signature=None, wallet=wallet, subaccount_exists=reading.exists)
            operation.record_step(
                "delete_record", StepOutcome.OK,
                detail={"subaccount_exists": reading.exists, "balance": str(reading.balance)},
            )
            operation.transition("deleted")
            await self._finish(operation, OperationStatus.SUCCESS)
            return Deleted(bot_id=bot.id, operation_id=operation.id)

        return await self._sweep_required(operation, bot, wallet, reading.balance)

    async def _abort(self, operation: LifecycleOperation, reason: str) -> None:
        """End an operation that failed a check before any state change."""
        operation.record_step("normal_delete", StepOutcome.SKIPPED, detail={"reason": reason})
        await self._finish(operation, OperationStatus.FAILED, reason=reason)

    # ==================== LEGACY ====================

    async def _legacy_warning(self, operation: LifecycleOperation, bot: TradingBot) -> LegacyWarning:
        operation.record_step("legacy_check", StepOutcome.PENDING, detail={"legacy_address": bot.legacy_address})
        operation.transition("legacy_warning", OperationStatus.AWAITING_ACKNOWLEDGEMENT)
        await self._save(operation)
        logger.warning(f"[{operation.id}] Bot {bot.id} is a legacy bot; funds may remain at {bot.legacy_address}")
        return LegacyWarning(
            bot_id=bot.id,
            operation_id=operation.id,
            legacy_address=bot.legacy_address,
            message=(
                f"This bot predates subaccount isolation. Any funds at {bot.legacy_address} "
                "cannot be swept automatically and will stay there if you delete anyway."
            ),
        )

    async def acknowledge_legacy_delete(self, operation: LifecycleOperation) -> Deleted:
        """User chose "delete anyway" for a legacy bot."""
        if operation.status != OperationStatus.AWAITING_ACKNOWLEDGEMENT:
            raise InvalidOperationStateError(f"Operation {operation.id} is not awaiting acknowledgement")
        bot = await self._load_bot(operation.target_id)

        await self._finalize(bot, tx_signature=None, wallet=None, subaccount_exists=False)
        operation.record_step("legacy_acknowledged", StepOutcome.OK, detail={"legacy_address": bot.legacy_address})
        operation.transition("deleted")
        await self._finish(operation, OperationStatus.SUCCESS)
        return Deleted(bot_id=bot.id, operation_id=operation.id)

    # ==================== SWEEP ====================

    async def _sweep_required(
        self,
        operation: LifecycleOperation,
        bot: TradingBot,
        wallet: AgentWallet,
        balance: Decimal
    ) -> DeleteOutcome:
        operation.transition("sweep_required")
        operation.context["sweep_amount"] = str(balance)
        params = {
            "agent_address": wallet.public_address,
            "from_index": bot.subaccount_index,
            "to_index": 0,
            "amount": balance,
        }

        try:
            result = await self._request_user_signature(
                operation, self.SWEEP_STEP, IntentKind.SWEEP_SUBACCOUNT, params,
                amount=balance, subaccount_index=bot.subaccount_index,
            )
        except STEP_ERRORS as e:
            error = classify_error(e)
            operation.pending_signature = None
            operation.record_step(self.SWEEP_STEP, StepOutcome.FAILED, error=error)
            operation.transition("failed")
            await self._finish(operation, OperationStatus.FAILED, reason=error.message)
            return DeleteFailed(bot_id=bot.id, operation_id=operation.id, reason=error.message)

        if result.status == SignatureStatus.DEFERRED:
            operation.transition("awaiting_signature")
            await self._save(operation)
            return SweepRequired(
                bot_id=bot.id,
                operation_id=operation.id,
                balance=balance,
                unsigned_tx=operation.pending_signature.unsigned_tx,
                signer_address=operation.pending_signature.signer_address,
            )

        # Inline signer answered immediately; same handling as a resumed signature
        operation.status = OperationStatus.AWAITING_SIGNATURE
        if result.status == SignatureStatus.SIGNED:
            return await self.submit_signature(operation, result.signed_tx)
        return await self.reject_signature(
            operation, result.reason, timed_out=result.status == SignatureStatus.TIMED_OUT
        )

    async def submit_signature(self, operation: LifecycleOperation, signed_tx: str) -> DeleteOutcome:
        """Resume with the user's signed sweep: submit, confirm, then finalize."""
        self._require_pending(operation)
        operation.transition("confirming")
        confirmation = await self._submit_pending(operation, signed_tx)
        return await self._after_confirmation(operation, confirmation)

    async def reject_signature(
        self,
        operation: LifecycleOperation,
        reason: Optional[str] = None,
        timed_out: bool = False
    ) -> DeleteFailed:
        """Signer declined or timed out: the bot record is left untouched."""
        self._require_pending(operation)
        error = signer_error(reason, timed_out=timed_out)
        operation.record_step(self.SWEEP_STEP, StepOutcome.REJECTED, error=error)
        operation.transition("failed")
        await self._finish(operation, OperationStatus.FAILED, reason=error.message)
        return DeleteFailed(bot_id=operation.target_id, operation_id=operation.id, reason=error.message)

    async def recheck(self, operation: LifecycleOperation) -> DeleteOutcome:
        """Poll the ledger again for the unconfirmed sweep. Never resubmits."""
        signature = operation.context.get("unconfirmed_signature")
        if operation.status != OperationStatus.UNKNOWN or not signature:
            raise InvalidOperationStateError(f"Operation {operation.id} has no unconfirmed sweep to re-check")

        confirmation = await self.rt.confirmer.poll(signature, operation.id)
        if confirmation.outcome == ConfirmationOutcome.POSSIBLY_PENDING:
            return DeleteFailed(
                bot_id=operation.target_id,
                operation_id=operation.id,
                reason="unknown, check ledger",
                status=OperationStatus.UNKNOWN.value,
            )
        operation.status = OperationStatus.IN_PROGRESS
        return await self._after_confirmation(operation, confirmation)

    async def _after_confirmation(
        self,
        operation: LifecycleOperation,
        confirmation: ConfirmationResult
    ) -> DeleteOutcome:
        bot_id = operation.target_id
        signatures = [confirmation.signature] if confirmation.signature else []

        if confirmation.outcome == ConfirmationOutcome.CONFIRMED:
            operation.record_step(self.SWEEP_STEP, StepOutcome.OK, tx_signatures=signatures,
                                  detail={"amount": operation.context.get("sweep_amount")})
            operation.context.pop("unconfirmed_signature", None)
            await self._save(operation)

            bot = await self._load_bot(bot_id)
            wallet = await self._load_wallet(bot.agent_wallet_id)
            await self._finalize(bot, tx_signature=confirmation.signature, wallet=wallet, subaccount_exists=True)
            operation.record_step("delete_record", StepOutcome.OK, detail={"tx_signature": confirmation.signature})
            operation.transition("deleted")
            await self._finish(operation, OperationStatus.SUCCESS)
            return Deleted(bot_id=bot_id, operation_id=operation.id, tx_signature=confirmation.signature)

        if confirmation.outcome == ConfirmationOutcome.FAILED:
            error = classify_error(confirmation.error)
            operation.record_step(self.SWEEP_STEP, StepOutcome.FAILED, error=error, tx_signatures=signatures)
            operation.transition("failed")
            await self._finish(operation, OperationStatus.FAILED, reason=error.message)
            return DeleteFailed(bot_id=bot_id, operation_id=operation.id, reason=error.message)

        operation.record_step(
            self.SWEEP_STEP, StepOutcome.UNKNOWN,
            error=ambiguous_confirmation_error(confirmation.signature),
            tx_signatures=signatures,
        )
        self._remember_unconfirmed(operation, self.SWEEP_STEP, confirmation.signature)
        await self._finish(operation, OperationStatus.UNKNOWN, reason="unknown, check ledger")
        return DeleteFailed(
            bot_id=bot_id,
            operation_id=operation.id,
            reason="unknown, check ledger",
            status=OperationStatus.UNKNOWN.value,
        )

    # ==================== FINALIZE ====================

    async def confirm_delete(
        self,
        bot_id: str,
        tx_signature: Optional[str] = None,
        owner_address: Optional[str] = None
    ) -> Union[Deleted, DeleteFailed]:
        """
        Finalize a bot deletion. Idempotent per transaction signature.

        With a signature, the transaction must be confirmed on the ledger. In
        every case the bot's subaccount must be empty or absent. If the bot's
        own delete operation is waiting on this sweep, that operation is
        completed too.
        """
        bot = await self._load_bot(bot_id, owner_address)

        if bot.is_deleted:
            if tx_signature is None or bot.delete_tx_signature == tx_signature:
                return Deleted(bot_id=bot.id, tx_signature=bot.delete_tx_signature)
            return DeleteFailed(
                bot_id=bot.id,
                reason=f"Bot was already deleted with transaction {bot.delete_tx_signature}",
            )

        if bot.is_legacy:
            return DeleteFailed(bot_id=bot.id, reason="Legacy bot deletion must be acknowledged")

        operation = await self._owning_operation(bot)

        if tx_signature is not None:
            try:
                reading = await self.rt.ledger.get_transaction_status(tx_signature)
            except LedgerUnavailableError as e:
                raise LedgerReadError(f"Could not verify transaction {tx_signature}: {e}") from e
            if reading.status != TransactionStatus.CONFIRMED:
                return DeleteFailed(
                    bot_id=bot.id,
                    reason=f"Transaction {tx_signature} is {reading.status.value}, not confirmed",
                )

        wallet = None
        subaccount_exists = False
        if bot.has_subaccount:
            wallet = await self._load_wallet(bot.agent_wallet_id)
            try:
                balance = await self.rt.ledger.query_balance(self._ref(wallet, bot.subaccount_index))
            except LedgerUnavailableError as e:
                raise LedgerReadError(f"Could not read subaccount {bot.subaccount_index}: {e}") from e
            subaccount_exists = balance.exists
            if balance.exists and not self._is_dust(balance.balance):
                return DeleteFailed(
                    bot_id=bot.id,
                    reason=f"Subaccount still holds {balance.balance}; sweep it before deleting",
                )

        if operation is not None:
            if tx_signature is None:
                raise OperationInProgressError(operation_id=operation.id)
            return await self._after_confirmation(
                operation, ConfirmationResult(ConfirmationOutcome.CONFIRMED, signature=tx_signature)
            )

        await self._finalize(bot, tx_signature=tx_signature, wallet=wallet, subaccount_exists=subaccount_exists)
        return Deleted(bot_id=bot.id, tx_signature=tx_signature)

    async def _owning_operation(self, bot: TradingBot) -> Optional[LifecycleOperation]:
        """The delete operation currently holding the bot's lock, if it's waiting on its sweep."""
        holder = await self.rt.locks.holder(lock_key(TargetType.TRADING_BOT, bot.id))
        if holder is None:
            return None
        operation = await self.rt.operations.find_by_id(holder)
        if operation is None:
            return None
        if operation.kind != OperationKind.DELETE or operation.status not in (
            OperationStatus.AWAITING_SIGNATURE, OperationStatus.UNKNOWN
        ):
            raise OperationInProgressError(operation_id=operation.id)
        return operation

    async def _finalize(
        self,
        bot: TradingBot,
        tx_signature: Optional[str],
        wallet: Optional[AgentWallet],
        subaccount_exists: bool
    ) -> bool:
        """
        Soft-delete the bot record, at most once.

        A subaccount that still exists after the bot is gone stays owned by the
        agent wallet and is queued for cleanup so it remains accounted for.
        """
        deleted = await self.rt.trading_bots.mark_deleted(bot.id, tx_signature)
        if not deleted:
            logger.info(f"Bot {bot.id} was already deleted; finalize is a no-op")
            return False

        if wallet is not None and bot.subaccount_index is not None:
            await self.rt.subaccounts.unlink_bot(wallet.id, bot.subaccount_index)
            if subaccount_exists:
                await self.rt.orphans.register(OrphanedSubaccount(
                    agent_wallet_id=wallet.id,
                    agent_address=wallet.public_address,
                    index=bot.subaccount_index,
                ))
                logger.info(f"Subaccount {bot.subaccount_index} of wallet {wallet.id} queued for cleanup")

        logger.info(f"Bot {bot.id} deleted (tx: {tx_signature})")
        return True
