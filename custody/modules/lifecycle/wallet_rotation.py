"""
Agent Wallet Rotation

Replaces an agent wallet's identity once it holds nothing but its main
balance:

    withdrawing → deleting → transferring_residual → rotating

Preconditions (zero open positions, zero subaccount balances) are checked
against the ledger before anything is recorded. The new identity is only
created after the native residual on the old wallet is confirmed gone;
any earlier failure stops before rotating.
"""

from typing import List

from custody.domain.models.agent_wallet import AgentWallet
from custody.domain.models.lifecycle import (
    LifecycleOperation,
    OperationKind,
    StepError,
    StepOutcome,
    TargetType,
    WithdrawPolicy,
)
from custody.infrastructure.venue.base import IntentKind, LedgerUnavailableError
from custody.infrastructure.venue.signers import generate_agent_keypair
from custody.modules.lifecycle.operation_lock import lock_key
from custody.modules.lifecycle.reset_saga import ResetAccountSaga
from custody.modules.lifecycle.saga_base import StepFailed, StepRun
from custody.shared.exceptions import ErrorCategory, PreconditionError
from custody.utils.encryption import get_encryption_service
from custody.utils.logger import get_logger

logger = get_logger(__name__)


class WalletRotationSaga(ResetAccountSaga):
    """Agent-wallet reset: the withdraw and delete steps are shared with the account reset."""

    kind = OperationKind.RESET_AGENT_WALLET
    STEPS = ("withdrawing", "deleting", "transferring_residual", "rotating")

    async def check_preconditions(self, wallet: AgentWallet) -> None:
        """
        Verify the wallet is flat and its subaccounts are empty.

        Raises:
            PreconditionError: On open positions, funded subaccounts, or an unreadable ledger
        """
        violations = []
        try:
            for index in await self._known_indexes(wallet):
                ref = self._ref(wallet, index)
                positions = await self.rt.ledger.list_open_positions(ref)
                if positions:
                    violations.append({"subaccount_index": index, "open_positions": len(positions)})
                reading = await self.rt.ledger.query_balance(ref)
                if reading.exists and not self._is_dust(reading.balance):
                    violations.append({"subaccount_index": index, "balance": str(reading.balance)})
        except LedgerUnavailableError as e:
            raise PreconditionError(
                f"Could not verify the wallet is empty: {e}",
                details={"retryable": True},
            ) from e

        if violations:
            raise PreconditionError(
                "Agent wallet reset requires zero open positions and empty subaccounts. "
                "Run an account reset first.",
                details={"violations": violations},
            )

    async def start(self, wallet: AgentWallet, policy: WithdrawPolicy = WithdrawPolicy.FULL) -> LifecycleOperation:
        """
        Check preconditions, then open the rotation under the wallet and bot locks.

        Raises:
            PreconditionError: Nothing was recorded or locked
            OperationInProgressError: If the wallet or any of its bots is busy
        """
        await self.check_preconditions(wallet)

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
            policy=WithdrawPolicy.FULL,
        )

    # ==================== STEPS ====================

    async def _step_transferring_residual(self, operation: LifecycleOperation, wallet: AgentWallet) -> StepRun:
        threshold = self.settings.NATIVE_DUST_THRESHOLD
        signatures: List[str] = []

        residual = await self.rt.ledger.query_native_balance(wallet.public_address)
        if residual > threshold:
            await self._run_agent_intent(operation, wallet, IntentKind.TRANSFER_NATIVE, {
                "from_address": wallet.public_address,
                "destination": wallet.owner_address,
                "amount": residual,
            }, signatures)

        # Rotation only proceeds on the ledger's word, not the submitter's
        remaining = await self.rt.ledger.query_native_balance(wallet.public_address)
        if remaining > threshold:
            raise StepFailed(StepError(
                category=ErrorCategory.LEDGER,
                code="residual_not_cleared",
                message=f"Native balance {remaining} is still on the old wallet",
                retryable=True,
            ), signatures)

        return StepRun(StepOutcome.OK, detail={"transferred": str(residual if residual > threshold else 0)},
                       tx_signatures=signatures)

    async def _step_rotating(self, operation: LifecycleOperation, wallet: AgentWallet) -> StepRun:
        public_address, private_key_hex = generate_agent_keypair()
        encryption = self.rt.encryption or get_encryption_service()

        replacement = AgentWallet(
            owner_address=wallet.owner_address,
            public_address=public_address,
            private_key_encrypted=encryption.encrypt_string(private_key_hex),
            rotated_from_id=wallet.id,
        )

        # Retire first: an owner never has two active wallets
        wallet.retire()
        await self.rt.agent_wallets.save(wallet)
        replacement = await self.rt.agent_wallets.save(replacement)

        operation.context["new_agent_wallet_id"] = replacement.id
        logger.info(f"[{operation.id}] Agent wallet {wallet.id} rotated to {replacement.id} ({public_address})")
        return StepRun(StepOutcome.OK, detail={
            "new_agent_wallet_id": replacement.id,
            "new_public_address": public_address,
        })
