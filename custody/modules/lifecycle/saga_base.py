"""
Saga Base

Plumbing shared by the delete, reset-account and wallet-rotation sagas:
opening and finishing operations under the single-flight lock, running an
agent-signed intent end to end, and suspending on a user signature.

StepwiseSaga adds the forward-only step runner used by the reset and
rotation flows: each step re-derives its remaining work from the ledger, so
re-running a step that already completed does nothing, and a retry resumes
at the first step that did not finish.

Author: Custody Team
Last Updated: 2026-10-18
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from bson import ObjectId

from custody.domain.models.agent_wallet import AgentWallet
from custody.domain.models.lifecycle import (
    LOCK_RELEASING_STATUSES,
    RETRYABLE_STATUSES,
    LifecycleOperation,
    OperationKind,
    OperationStatus,
    PendingSignature,
    StepError,
    StepOutcome,
    TargetType,
    WithdrawPolicy,
)
from custody.infrastructure.venue.base import (
    IntentKind,
    LedgerUnavailableError,
    SignatureRequest,
    SignatureResult,
    SignatureStatus,
    SigningAuthority,
    SubaccountRef,
    TransactionBuildError,
    VenueError,
)
from custody.modules.lifecycle.confirmation import ConfirmationOutcome, ConfirmationResult
from custody.modules.lifecycle.error_classifier import (
    ambiguous_confirmation_error,
    classify_error,
    signer_error,
)
from custody.modules.lifecycle.runtime import LifecycleRuntime
from custody.shared.exceptions import AgentWalletNotFoundError, InvalidOperationStateError
from custody.utils.logger import get_logger

logger = get_logger(__name__)

# Failures a step records in its log instead of propagating
STEP_ERRORS = (VenueError, LedgerUnavailableError, TransactionBuildError)

FAILED_OUTCOMES = frozenset({StepOutcome.FAILED, StepOutcome.REJECTED})
DONE_OUTCOMES = frozenset({StepOutcome.OK, StepOutcome.SKIPPED})

ABANDONABLE_STATUSES = frozenset({
    OperationStatus.AWAITING_SIGNATURE,
    OperationStatus.AWAITING_ACKNOWLEDGEMENT,
    OperationStatus.UNKNOWN,
    OperationStatus.IN_PROGRESS,
})


class StepFailed(Exception):
    """A step ended in a definite failure (nothing more to confirm)."""

    def __init__(
        self,
        error: StepError,
        tx_signatures: Optional[List[str]] = None,
        detail: Optional[Dict] = None,
        outcome: StepOutcome = StepOutcome.FAILED,
    ):
        self.error = error
        self.tx_signatures = tx_signatures or []
        self.detail = detail or {}
        self.outcome = outcome
        super().__init__(error.message)


class StepUnresolved(Exception):
    """A step submitted a transaction whose confirmation is ambiguous."""

    def __init__(self, signature: Optional[str], tx_signatures: Optional[List[str]] = None):
        self.signature = signature
        self.tx_signatures = tx_signatures or []
        super().__init__(f"Transaction {signature} possibly still pending")


@dataclass
class StepRun:
    """What a step handler reports back to the runner"""
    outcome: StepOutcome
    detail: Dict[str, Any] = field(default_factory=dict)
    tx_signatures: List[str] = field(default_factory=list)


def operation_result(operation: LifecycleOperation, reason: Optional[str] = None) -> Dict[str, Any]:
    """Terminal result payload: the ordered step log with individual outcomes."""
    steps = []
    for step, outcome in operation.step_outcomes().items():
        record = operation.last_record(step)
        entry: Dict[str, Any] = {"step": step, "outcome": outcome.value}
        if record.error is not None:
            entry["error"] = record.error.model_dump(mode="json")
        if record.tx_signatures:
            entry["tx_signatures"] = list(record.tx_signatures)
        steps.append(entry)

    result: Dict[str, Any] = {"steps": steps}
    if reason:
        result["reason"] = reason
    return result


class SagaBase:
    """Shared saga plumbing. Subclasses set `kind`."""

    kind: OperationKind

    def __init__(self, runtime: LifecycleRuntime):
        self.rt = runtime
        self.settings = runtime.settings

    # ==================== OPERATION RECORD ====================

    async def _open_operation(
        self,
        target_type: TargetType,
        target_id: str,
        owner_address: str,
        agent_wallet_id: Optional[str],
        lock_keys: List[str],
        state: str,
        policy: Optional[WithdrawPolicy] = None,
    ) -> LifecycleOperation:
        """
        Create the operation record under its locks.

        Raises:
            OperationInProgressError: If any target is owned by another operation
        """
        operation = LifecycleOperation(
            id=str(ObjectId()),
            target_type=target_type,
            target_id=target_id,
            owner_address=owner_address,
            agent_wallet_id=agent_wallet_id,
            kind=self.kind,
            state=state,
            policy=policy,
            lock_keys=lock_keys,
        )
        await self.rt.locks.acquire(lock_keys, operation.id)
        await self.rt.operations.save(operation)
        logger.info(f"[{operation.id}] {self.kind.value} started on {target_type.value}:{target_id}")
        return operation

    async def _save(self, operation: LifecycleOperation) -> LifecycleOperation:
        return await self.rt.operations.save(operation)

    async def _finish(
        self,
        operation: LifecycleOperation,
        status: OperationStatus,
        reason: Optional[str] = None
    ) -> LifecycleOperation:
        operation.finish(status, operation_result(operation, reason))
        await self._save(operation)
        if status in LOCK_RELEASING_STATUSES:
            await self.rt.locks.release(operation.lock_keys, operation.id)
        logger.info(f"[{operation.id}] {self.kind.value} finished: {status.value}")
        await self.rt.notify_finished(operation)
        return operation

    async def _reopen(self, operation: LifecycleOperation, allowed: frozenset) -> None:
        """Put a finished operation back in progress (retry / recheck)."""
        if operation.status not in allowed:
            raise InvalidOperationStateError(
                f"Operation {operation.id} is {operation.status.value}; expected one of "
                f"{sorted(status.value for status in allowed)}"
            )
        await self.rt.locks.acquire(operation.lock_keys, operation.id)
        operation.status = OperationStatus.IN_PROGRESS
        operation.result = None
        operation.completed_at = None
        await self._save(operation)

    async def abandon(self, operation: LifecycleOperation, reason: str = "Abandoned by user") -> LifecycleOperation:
        """
        Give up on a suspended operation and release its targets.

        Completed steps stand. An unconfirmed transaction is not cancelled by
        abandoning; it may still land.
        """
        if operation.status not in ABANDONABLE_STATUSES:
            raise InvalidOperationStateError(
                f"Operation {operation.id} is {operation.status.value} and cannot be abandoned"
            )
        pending_step = operation.pending_signature.step if operation.pending_signature else None
        if pending_step is None and operation.status == OperationStatus.AWAITING_ACKNOWLEDGEMENT:
            pending_step = operation.steps[-1].step if operation.steps else operation.state
        if pending_step is not None:
            operation.record_step(pending_step, StepOutcome.SKIPPED, detail={"reason": reason})

        logger.info(f"[{operation.id}] Abandoning ({reason})")
        return await self._finish(operation, OperationStatus.ABANDONED, reason=reason)

    # ==================== LEDGER HELPERS ====================

    async def _load_wallet(self, agent_wallet_id: str) -> AgentWallet:
        wallet = await self.rt.agent_wallets.find_by_id(agent_wallet_id)
        if wallet is None:
            raise AgentWalletNotFoundError()
        return wallet

    async def _known_indexes(self, wallet: AgentWallet) -> List[int]:
        """Subaccounts known to the association table or to the ledger."""
        associations = await self.rt.subaccounts.find_by_agent_wallet(wallet.id)
        on_ledger = await self.rt.ledger.list_subaccounts(wallet.public_address)
        return sorted({row.index for row in associations} | set(on_ledger))

    def _ref(self, wallet: AgentWallet, index: int) -> SubaccountRef:
        return SubaccountRef(agent_address=wallet.public_address, index=index)

    def _is_dust(self, amount: Decimal) -> bool:
        return amount <= self.settings.BALANCE_DUST_THRESHOLD

    # ==================== TRANSACTIONS ====================

    def _check_confirmation(self, confirmation: ConfirmationResult, signatures: List[str]) -> str:
        """Turn a confirmation result into a signature, or raise the step outcome."""
        if confirmation.signature:
            signatures.append(confirmation.signature)
        if confirmation.outcome == ConfirmationOutcome.CONFIRMED:
            return confirmation.signature
        if confirmation.outcome == ConfirmationOutcome.FAILED:
            raise StepFailed(classify_error(confirmation.error), signatures)
        raise StepUnresolved(confirmation.signature, signatures)

    async def _run_agent_intent(
        self,
        operation: LifecycleOperation,
        wallet: AgentWallet,
        kind: IntentKind,
        params: Dict[str, Any],
        signatures: List[str],
    ) -> str:
        """Build, agent-sign, submit and confirm one intent. Returns the confirmed signature."""
        built = await self.rt.builder.build_intent(kind, params)
        request = SignatureRequest(
            operation_id=operation.id,
            kind=kind,
            unsigned_tx=built.unsigned_tx,
            signer_address=wallet.public_address,
        )
        signed = await self.rt.agent_signer(wallet).sign(request)
        if signed.status != SignatureStatus.SIGNED:
            raise StepFailed(
                signer_error(signed.reason, timed_out=signed.status == SignatureStatus.TIMED_OUT),
                signatures,
                outcome=StepOutcome.REJECTED,
            )

        confirmation = await self.rt.confirmer.submit(signed.signed_tx, built.confirmation_hints, operation.id)
        return self._check_confirmation(confirmation, signatures)

    async def _request_user_signature(
        self,
        operation: LifecycleOperation,
        step: str,
        kind: IntentKind,
        params: Dict[str, Any],
        amount: Optional[Decimal] = None,
        subaccount_index: Optional[int] = None,
    ) -> SignatureResult:
        """
        Build an intent and present it to the external wallet owner.

        The unsigned transaction is persisted first, so a deferred signature can
        arrive through the API in another process.
        """
        built = await self.rt.builder.build_intent(kind, params)
        operation.pending_signature = PendingSignature(
            step=step,
            kind=kind,
            authority=SigningAuthority.USER,
            signer_address=operation.owner_address,
            unsigned_tx=built.unsigned_tx,
            confirmation_hints=built.confirmation_hints,
            amount=amount,
            subaccount_index=subaccount_index,
        )
        await self._save(operation)

        result = await self.rt.user_signer.sign(SignatureRequest(
            operation_id=operation.id,
            kind=kind,
            unsigned_tx=built.unsigned_tx,
            signer_address=operation.owner_address,
            description=f"{kind.value} of {amount}" if amount is not None else kind.value,
        ))

        if result.status == SignatureStatus.DEFERRED:
            operation.record_step(step, StepOutcome.PENDING, detail={"amount": str(amount) if amount is not None else None})
            operation.status = OperationStatus.AWAITING_SIGNATURE
            await self._save(operation)
            logger.info(f"[{operation.id}] {step}: awaiting signature from {operation.owner_address}")
        return result

    async def _submit_pending(self, operation: LifecycleOperation, signed_tx: str) -> ConfirmationResult:
        """Submit the user-signed version of the persisted pending transaction."""
        pending = self._require_pending(operation)
        operation.status = OperationStatus.IN_PROGRESS
        await self._save(operation)
        logger.info(f"[{operation.id}] {pending.step}: signature received, submitting")
        return await self.rt.confirmer.submit(signed_tx, pending.confirmation_hints, operation.id)

    def _require_pending(self, operation: LifecycleOperation) -> PendingSignature:
        if operation.status != OperationStatus.AWAITING_SIGNATURE or operation.pending_signature is None:
            raise InvalidOperationStateError(f"Operation {operation.id} is not awaiting a signature")
        return operation.pending_signature

    def _remember_unconfirmed(self, operation: LifecycleOperation, step: str, signature: Optional[str]) -> None:
        operation.context["unconfirmed_step"] = step
        operation.context["unconfirmed_signature"] = signature


class StepwiseSaga(SagaBase):
    """
    Forward-only step runner.

    Subclasses define STEPS and an `_step_<name>(operation, wallet)` coroutine
    per step returning a StepRun (or raising StepFailed / StepUnresolved).
    """

    STEPS: Tuple[str, ...] = ()

    # ==================== EVENTS ====================

    def _event(self, operation: LifecycleOperation, step: str, status: str, **extra) -> Dict[str, Any]:
        event = {"operation_id": operation.id, "step": step, "status": status}
        event.update({key: value for key, value in extra.items() if value is not None})
        return event

    def _terminal_event(self, operation: LifecycleOperation) -> Dict[str, Any]:
        return self._event(operation, "complete", operation.status.value, result=operation.result)

    def _terminal_status(self, operation: LifecycleOperation) -> OperationStatus:
        outcomes = operation.step_outcomes().values()
        if any(outcome in FAILED_OUTCOMES for outcome in outcomes):
            if any(outcome == StepOutcome.OK for outcome in outcomes):
                return OperationStatus.PARTIAL_SUCCESS
            return OperationStatus.FAILED
        return OperationStatus.SUCCESS

    def _remaining_steps(self, operation: LifecycleOperation) -> Tuple[str, ...]:
        outcomes = operation.step_outcomes()
        for position, step in enumerate(self.STEPS):
            if outcomes.get(step) not in DONE_OUTCOMES:
                return self.STEPS[position:]
        return ()

    # ==================== RUNNER ====================

    async def run(self, operation: LifecycleOperation) -> AsyncIterator[Dict[str, Any]]:
        """Run the remaining steps, yielding `{step, status}` events until terminal or suspended."""
        wallet = await self._load_wallet(operation.agent_wallet_id or operation.target_id)

        for step in self._remaining_steps(operation):
            operation.transition(step, OperationStatus.IN_PROGRESS)
            await self._save(operation)
            yield self._event(operation, step, "started")

            try:
                handler = getattr(self, f"_step_{step}")
                step_run = await handler(operation, wallet)
            except StepUnresolved as e:
                operation.record_step(
                    step, StepOutcome.UNKNOWN,
                    error=ambiguous_confirmation_error(e.signature),
                    tx_signatures=e.tx_signatures,
                )
                self._remember_unconfirmed(operation, step, e.signature)
                await self._finish(operation, OperationStatus.UNKNOWN, reason="unknown, check ledger")
                yield self._event(operation, step, StepOutcome.UNKNOWN.value, signature=e.signature)
                yield self._terminal_event(operation)
                return
            except StepFailed as e:
                async for event in self._fail_step(operation, step, e.error, e.tx_signatures, e.detail, e.outcome):
                    yield event
                return
            except STEP_ERRORS as e:
                async for event in self._fail_step(operation, step, classify_error(e)):
                    yield event
                return

            if step_run.outcome == StepOutcome.PENDING:
                pending = operation.pending_signature
                yield self._event(
                    operation, step, OperationStatus.AWAITING_SIGNATURE.value,
                    unsigned_tx=pending.unsigned_tx,
                    amount=str(pending.amount) if pending.amount is not None else None,
                    signer_address=pending.signer_address,
                )
                return

            operation.record_step(step, step_run.outcome, tx_signatures=step_run.tx_signatures, detail=step_run.detail)
            await self._save(operation)
            logger.info(f"[{operation.id}] {step}: {step_run.outcome.value} {step_run.detail}")
            yield self._event(operation, step, step_run.outcome.value, detail=step_run.detail or None)

        await self._finish(operation, self._terminal_status(operation))
        yield self._terminal_event(operation)

    async def _fail_step(
        self,
        operation: LifecycleOperation,
        step: str,
        error: StepError,
        tx_signatures: Optional[List[str]] = None,
        detail: Optional[Dict[str, Any]] = None,
        outcome: StepOutcome = StepOutcome.FAILED,
    ) -> AsyncIterator[Dict[str, Any]]:
        operation.record_step(step, outcome, error=error, tx_signatures=tx_signatures, detail=detail)
        logger.warning(f"[{operation.id}] {step}: {outcome.value} ({error.category.value}: {error.message})")
        await self._finish(operation, self._terminal_status(operation), reason=error.message)
        yield self._event(operation, step, outcome.value, error=error.model_dump(mode="json"))
        yield self._terminal_event(operation)

    async def _user_signed_step(
        self,
        operation: LifecycleOperation,
        step: str,
        kind: IntentKind,
        params: Dict[str, Any],
        amount: Decimal,
    ) -> StepRun:
        """
        Present a user-signed intent. Usually suspends the saga (PENDING);
        an inline signer result is handled the same way a resumed one is.
        """
        result = await self._request_user_signature(operation, step, kind, params, amount=amount)
        if result.status == SignatureStatus.DEFERRED:
            return StepRun(StepOutcome.PENDING)

        pending = operation.pending_signature
        operation.pending_signature = None
        if result.status != SignatureStatus.SIGNED:
            raise StepFailed(
                signer_error(result.reason, timed_out=result.status == SignatureStatus.TIMED_OUT),
                outcome=StepOutcome.REJECTED,
            )

        signatures: List[str] = []
        confirmation = await self.rt.confirmer.submit(result.signed_tx, pending.confirmation_hints, operation.id)
        self._check_confirmation(confirmation, signatures)
        return StepRun(StepOutcome.OK, detail={"amount": str(amount)}, tx_signatures=signatures)

    # ==================== RESUMPTION ====================

    async def resume_with_signature(self, operation: LifecycleOperation, signed_tx: str) -> List[Dict[str, Any]]:
        """Submit the user's signed transaction, then continue with the remaining steps."""
        pending = self._require_pending(operation)
        step = pending.step
        detail = {"amount": str(pending.amount)} if pending.amount is not None else None
        confirmation = await self._submit_pending(operation, signed_tx)
        return await self._apply_confirmation(operation, step, confirmation, detail=detail)

    async def resume_with_rejection(
        self,
        operation: LifecycleOperation,
        reason: Optional[str] = None,
        timed_out: bool = False
    ) -> List[Dict[str, Any]]:
        """A rejected signature cancels the current step only; earlier steps stand."""
        pending = self._require_pending(operation)
        return [
            event async for event in self._fail_step(
                operation, pending.step, signer_error(reason, timed_out=timed_out), outcome=StepOutcome.REJECTED
            )
        ]

    async def retry(self, operation: LifecycleOperation) -> AsyncIterator[Dict[str, Any]]:
        """Re-run the failed suffix of a partially successful or failed operation."""
        await self._reopen(operation, RETRYABLE_STATUSES)
        logger.info(f"[{operation.id}] Retrying from {self._remaining_steps(operation)[:1]}")
        async for event in self.run(operation):
            yield event

    async def recheck(self, operation: LifecycleOperation) -> List[Dict[str, Any]]:
        """Poll the ledger again for an unconfirmed transaction. Never resubmits."""
        if operation.status != OperationStatus.UNKNOWN:
            raise InvalidOperationStateError(f"Operation {operation.id} has no unconfirmed transaction")
        step = operation.context.get("unconfirmed_step")
        signature = operation.context.get("unconfirmed_signature")
        if not signature:
            raise InvalidOperationStateError(
                f"Operation {operation.id} has no transaction signature to re-check; inspect the ledger"
            )

        confirmation = await self.rt.confirmer.poll(signature, operation.id)
        if confirmation.outcome == ConfirmationOutcome.POSSIBLY_PENDING:
            await self._save(operation)
            return [self._event(operation, step, StepOutcome.UNKNOWN.value, signature=signature)]

        operation.status = OperationStatus.IN_PROGRESS
        operation.result = None
        operation.completed_at = None
        if confirmation.outcome == ConfirmationOutcome.FAILED:
            return await self._apply_confirmation(operation, step, confirmation)

        # A step may hold more intents than the one that landed; it re-derives the rest from the ledger
        operation.pending_signature = None
        operation.context.pop("unconfirmed_signature", None)
        operation.context.pop("unconfirmed_step", None)
        await self._save(operation)
        events = [self._event(operation, step, ConfirmationOutcome.CONFIRMED.value, signature=signature)]
        events.extend([event async for event in self.run(operation)])
        return events

    async def _apply_confirmation(
        self,
        operation: LifecycleOperation,
        step: str,
        confirmation: ConfirmationResult,
        detail: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        signatures: List[str] = []
        try:
            self._check_confirmation(confirmation, signatures)
        except StepUnresolved as e:
            operation.record_step(
                step, StepOutcome.UNKNOWN,
                error=ambiguous_confirmation_error(e.signature),
                tx_signatures=signatures,
            )
            self._remember_unconfirmed(operation, step, e.signature)
            await self._finish(operation, OperationStatus.UNKNOWN, reason="unknown, check ledger")
            return [
                self._event(operation, step, StepOutcome.UNKNOWN.value, signature=e.signature),
                self._terminal_event(operation),
            ]
        except StepFailed as e:
            return [event async for event in self._fail_step(operation, step, e.error, signatures)]

        operation.pending_signature = None
        operation.context.pop("unconfirmed_signature", None)
        operation.context.pop("unconfirmed_step", None)
        operation.record_step(step, StepOutcome.OK, tx_signatures=signatures, detail=detail)
        await self._save(operation)
        events = [self._event(operation, step, StepOutcome.OK.value)]
        events.extend([event async for event in self.run(operation)])
        return events
