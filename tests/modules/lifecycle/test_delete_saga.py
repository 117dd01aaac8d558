"""
Bot Delete Saga Tests

Covers: empty and funded subaccounts, the user-signed sweep, idempotent
finalize, rejected signatures, ambiguous confirmations and legacy bots.

Author: Custody Team
Last Updated: 2026-10-18
"""

from decimal import Decimal

import pytest

from custody.domain.models.lifecycle import OperationStatus, StepOutcome
from custody.domain.models.subaccount import OrphanStatus
from custody.infrastructure.venue.base import IntentKind, OpenPosition, TransactionStatus
from custody.modules.lifecycle.delete_saga import Deleted, DeleteFailed, LegacyWarning, SweepRequired
from custody.shared.exceptions import (
    LedgerReadError,
    OperationInProgressError,
    PermissionDeniedError,
    PreconditionError,
    TradingBotNotFoundError,
)
from tests.fakes import OTHER_OWNER, OWNER


# ==================== FIXTURES ====================

@pytest.fixture
async def funded_bot(wallet, ledger, make_bot):
    """Bot with 120 on its subaccount; agent wallet holds 50"""
    ledger.main[wallet.public_address] = Decimal("50")
    return await make_bot(Decimal("120"))


# ==================== IMMEDIATE DELETE ====================

@pytest.mark.asyncio
async def test_delete_bot_with_empty_subaccount(coordinator, runtime, make_bot):
    """Test: An empty subaccount deletes immediately without any transaction"""
    bot = await make_bot(Decimal("0"))

    outcome = await coordinator.request_delete(bot.id, OWNER)

    assert isinstance(outcome, Deleted)
    stored = await runtime.trading_bots.find_by_id(bot.id)
    assert stored.is_deleted
    assert stored.is_active is False

    operation = await runtime.operations.find_by_id(outcome.operation_id)
    assert operation.status == OperationStatus.SUCCESS
    assert await runtime.locks.holder(f"trading_bot:{bot.id}") is None


@pytest.mark.asyncio
async def test_delete_keeps_existing_subaccount_accounted_for(coordinator, runtime, wallet, make_bot):
    """Test: An empty subaccount that still exists is unlinked and queued for cleanup"""
    bot = await make_bot(Decimal("0"))

    await coordinator.request_delete(bot.id, OWNER)

    association = await runtime.subaccounts.find_by_index(wallet.id, bot.subaccount_index)
    assert association is not None
    assert association.trading_bot_id is None

    pending = await runtime.orphans.find_pending()
    assert [(orphan.agent_wallet_id, orphan.index) for orphan in pending] == [(wallet.id, bot.subaccount_index)]
    assert pending[0].status == OrphanStatus.PENDING


@pytest.mark.asyncio
async def test_delete_bot_without_subaccount_on_ledger(coordinator, runtime, make_bot):
    """Test: A subaccount absent from the ledger is not queued for cleanup"""
    bot = await make_bot(balance=None)

    outcome = await coordinator.request_delete(bot.id, OWNER)

    assert isinstance(outcome, Deleted)
    assert await runtime.orphans.find_pending() == []


# ==================== SWEEP FLOW ====================

@pytest.mark.asyncio
async def test_funded_bot_requires_sweep(coordinator, runtime, builder, funded_bot):
    """Test: A funded subaccount returns sweep_required and leaves the bot alone"""
    outcome = await coordinator.request_delete(funded_bot.id, OWNER)

    assert isinstance(outcome, SweepRequired)
    assert outcome.balance == Decimal("120")
    assert outcome.signer_address == OWNER

    sweeps = builder.built(IntentKind.SWEEP_SUBACCOUNT)
    assert len(sweeps) == 1
    assert sweeps[0]["amount"] == Decimal("120")
    assert sweeps[0]["from_index"] == funded_bot.subaccount_index

    operation = await runtime.operations.find_by_id(outcome.operation_id)
    assert operation.status == OperationStatus.AWAITING_SIGNATURE
    assert operation.pending_signature.unsigned_tx == outcome.unsigned_tx
    assert not (await runtime.trading_bots.find_by_id(funded_bot.id)).is_deleted


@pytest.mark.asyncio
async def test_signed_sweep_conserves_capital(coordinator, runtime, wallet, ledger, funded_bot):
    """Test: 50 available + 120 on the bot ends as 170 available, nothing lost"""
    before = await coordinator.get_snapshot(OWNER, refresh=True)
    assert before.available_balance == Decimal("50")
    assert before.deployed_balance == Decimal("120")
    assert before.total_equity == Decimal("170")

    sweep = await coordinator.request_delete(funded_bot.id, OWNER)
    result = await coordinator.submit_signature(sweep.operation_id, "user-signed-sweep", OWNER)

    assert result["outcome"] == "deleted"
    assert result["tx_signature"]
    assert ledger.main[wallet.public_address] == Decimal("170")

    bot = await runtime.trading_bots.find_by_id(funded_bot.id)
    assert bot.is_deleted
    assert bot.delete_tx_signature == result["tx_signature"]

    # The after-operation hook already republished the snapshot
    after = await coordinator.get_snapshot(OWNER)
    assert after.available_balance == Decimal("170")
    assert after.deployed_balance == Decimal("0")
    assert after.total_equity == before.total_equity

    operation = await runtime.operations.find_by_id(sweep.operation_id)
    assert operation.status == OperationStatus.SUCCESS
    assert operation.step_outcomes()["sweep"] == StepOutcome.OK


@pytest.mark.asyncio
async def test_confirm_delete_is_idempotent(coordinator, runtime, funded_bot):
    """Test: Repeating confirm_delete with the same signature is a no-op"""
    sweep = await coordinator.request_delete(funded_bot.id, OWNER)
    result = await coordinator.submit_signature(sweep.operation_id, "user-signed-sweep", OWNER)
    signature = result["tx_signature"]
    deleted_at = (await runtime.trading_bots.find_by_id(funded_bot.id)).deleted_at

    first = await coordinator.confirm_delete(funded_bot.id, OWNER, signature)
    second = await coordinator.confirm_delete(funded_bot.id, OWNER, signature)

    assert isinstance(first, Deleted) and isinstance(second, Deleted)
    assert first.tx_signature == second.tx_signature == signature
    assert (await runtime.trading_bots.find_by_id(funded_bot.id)).deleted_at == deleted_at


@pytest.mark.asyncio
async def test_confirm_delete_with_other_signature_is_refused(coordinator, funded_bot):
    """Test: A deleted bot cannot be re-finalized under a different transaction"""
    sweep = await coordinator.request_delete(funded_bot.id, OWNER)
    await coordinator.submit_signature(sweep.operation_id, "user-signed-sweep", OWNER)

    outcome = await coordinator.confirm_delete(funded_bot.id, OWNER, "some-other-signature")

    assert isinstance(outcome, DeleteFailed)


@pytest.mark.asyncio
async def test_confirm_delete_with_unconfirmed_transaction(coordinator, runtime, ledger, funded_bot):
    """Test: confirm_delete refuses a signature the ledger hasn't confirmed"""
    ledger.transactions["sig-pending"] = TransactionStatus.PENDING

    outcome = await coordinator.confirm_delete(funded_bot.id, OWNER, "sig-pending")

    assert isinstance(outcome, DeleteFailed)
    assert not (await runtime.trading_bots.find_by_id(funded_bot.id)).is_deleted


@pytest.mark.asyncio
async def test_confirm_delete_requires_empty_subaccount(coordinator, runtime, funded_bot):
    """Test: confirm_delete never deletes a bot whose subaccount still holds funds"""
    outcome = await coordinator.confirm_delete(funded_bot.id, OWNER)

    assert isinstance(outcome, DeleteFailed)
    assert "sweep" in outcome.reason
    assert not (await runtime.trading_bots.find_by_id(funded_bot.id)).is_deleted


@pytest.mark.asyncio
async def test_confirm_delete_completes_waiting_operation(coordinator, runtime, ledger, wallet, submitter, funded_bot):
    """Test: A sweep confirmed out of band finalizes the waiting operation"""
    sweep = await coordinator.request_delete(funded_bot.id, OWNER)

    # The user broadcast the signed sweep themselves
    ledger.subaccounts[(wallet.public_address, funded_bot.subaccount_index)] = Decimal("0")
    ledger.main[wallet.public_address] = Decimal("170")
    ledger.transactions["external-sig"] = TransactionStatus.CONFIRMED

    outcome = await coordinator.confirm_delete(funded_bot.id, OWNER, "external-sig")

    assert isinstance(outcome, Deleted)
    operation = await runtime.operations.find_by_id(sweep.operation_id)
    assert operation.status == OperationStatus.SUCCESS
    assert await runtime.locks.holder(f"trading_bot:{funded_bot.id}") is None


# ==================== FAILURES ====================

@pytest.mark.asyncio
async def test_rejected_signature_leaves_bot_untouched(coordinator, runtime, wallet, ledger, funded_bot):
    """Test: Declining the sweep fails the operation and changes nothing"""
    sweep = await coordinator.request_delete(funded_bot.id, OWNER)

    result = await coordinator.reject_signature(sweep.operation_id, OWNER, "Not now")

    assert result["outcome"] == "failed"
    assert result["reason"] == "Not now"
    bot = await runtime.trading_bots.find_by_id(funded_bot.id)
    assert not bot.is_deleted
    assert ledger.subaccounts[(wallet.public_address, funded_bot.subaccount_index)] == Decimal("120")

    operation = await runtime.operations.find_by_id(sweep.operation_id)
    assert operation.status == OperationStatus.FAILED
    assert operation.step_outcomes()["sweep"] == StepOutcome.REJECTED
    assert await runtime.locks.holder(f"trading_bot:{funded_bot.id}") is None


@pytest.mark.asyncio
async def test_failed_sweep_can_be_retried(coordinator, runtime, submitter, funded_bot):
    """Test: A venue failure fails the delete; a retry builds a fresh sweep"""
    submitter.modes[IntentKind.SWEEP_SUBACCOUNT] = "fail"
    sweep = await coordinator.request_delete(funded_bot.id, OWNER)

    failed = await coordinator.submit_signature(sweep.operation_id, "user-signed-sweep", OWNER)
    assert failed["outcome"] == "failed"
    assert failed["status"] == OperationStatus.FAILED.value

    submitter.modes.pop(IntentKind.SWEEP_SUBACCOUNT)
    retried = await coordinator.retry_operation(sweep.operation_id, OWNER)
    assert retried["outcome"] == "sweep_required"

    done = await coordinator.submit_signature(sweep.operation_id, "user-signed-sweep", OWNER)
    assert done["outcome"] == "deleted"


@pytest.mark.asyncio
async def test_ambiguous_confirmation_reports_unknown(coordinator, runtime, submitter, funded_bot):
    """Test: An exhausted confirmation poll is 'unknown', never 'failed', and keeps the lock"""
    submitter.modes[IntentKind.SWEEP_SUBACCOUNT] = "pending"
    sweep = await coordinator.request_delete(funded_bot.id, OWNER)

    result = await coordinator.submit_signature(sweep.operation_id, "user-signed-sweep", OWNER)

    assert result["outcome"] == "failed"
    assert result["status"] == OperationStatus.UNKNOWN.value
    assert result["reason"] == "unknown, check ledger"

    operation = await runtime.operations.find_by_id(sweep.operation_id)
    assert operation.status == OperationStatus.UNKNOWN
    assert await runtime.locks.holder(f"trading_bot:{funded_bot.id}") == operation.id

    with pytest.raises(OperationInProgressError):
        await coordinator.request_delete(funded_bot.id, OWNER)


@pytest.mark.asyncio
async def test_recheck_finalizes_landed_sweep(coordinator, runtime, submitter, funded_bot):
    """Test: Re-checking after the sweep lands finalizes without resubmitting"""
    submitter.modes[IntentKind.SWEEP_SUBACCOUNT] = "pending"
    sweep = await coordinator.request_delete(funded_bot.id, OWNER)
    await coordinator.submit_signature(sweep.operation_id, "user-signed-sweep", OWNER)
    operation = await runtime.operations.find_by_id(sweep.operation_id)
    signature = operation.context["unconfirmed_signature"]

    still = await coordinator.recheck_operation(sweep.operation_id, OWNER)
    assert still["status"] == OperationStatus.UNKNOWN.value

    submitter.land(signature)
    submissions = len(submitter.submitted)
    result = await coordinator.recheck_operation(sweep.operation_id, OWNER)

    assert result["outcome"] == "deleted"
    assert result["tx_signature"] == signature
    assert len(submitter.submitted) == submissions
    assert (await runtime.trading_bots.find_by_id(funded_bot.id)).is_deleted


@pytest.mark.asyncio
async def test_open_positions_block_delete(coordinator, runtime, ledger, wallet, funded_bot):
    """Test: A bot with open positions is refused before any state change"""
    ledger.positions[(wallet.public_address, funded_bot.subaccount_index)] = [
        OpenPosition(market="SOL-PERP", base_size=Decimal("2"))
    ]

    with pytest.raises(PreconditionError) as exc_info:
        await coordinator.request_delete(funded_bot.id, OWNER)

    assert exc_info.value.details["open_positions"] == ["SOL-PERP"]
    assert not (await runtime.trading_bots.find_by_id(funded_bot.id)).is_deleted
    assert await runtime.locks.holder(f"trading_bot:{funded_bot.id}") is None


@pytest.mark.asyncio
async def test_ledger_outage_blocks_delete(coordinator, runtime, ledger, funded_bot):
    """Test: An unreadable subaccount never counts as empty"""
    ledger.unavailable = True

    with pytest.raises(LedgerReadError):
        await coordinator.request_delete(funded_bot.id, OWNER)

    assert not (await runtime.trading_bots.find_by_id(funded_bot.id)).is_deleted


@pytest.mark.asyncio
async def test_second_delete_rejected_while_first_pending(coordinator, funded_bot):
    """Test: Single-flight per bot; the blocking operation id is reported"""
    sweep = await coordinator.request_delete(funded_bot.id, OWNER)

    with pytest.raises(OperationInProgressError) as exc_info:
        await coordinator.request_delete(funded_bot.id, OWNER)

    assert exc_info.value.details["operation_id"] == sweep.operation_id


@pytest.mark.asyncio
async def test_delete_checks_ownership(coordinator, funded_bot):
    """Test: Another wallet cannot delete the bot"""
    with pytest.raises(PermissionDeniedError):
        await coordinator.request_delete(funded_bot.id, OTHER_OWNER)


@pytest.mark.asyncio
async def test_deleted_bot_cannot_be_deleted_again(coordinator, make_bot):
    """Test: Requesting deletion of a deleted bot is a not-found"""
    bot = await make_bot(Decimal("0"))
    await coordinator.request_delete(bot.id, OWNER)

    with pytest.raises(TradingBotNotFoundError):
        await coordinator.request_delete(bot.id, OWNER)


# ==================== LEGACY BOTS ====================

@pytest.mark.asyncio
async def test_legacy_bot_requires_acknowledgement(coordinator, runtime, make_legacy_bot):
    """Test: A legacy bot warns first and deletes only after acknowledgement"""
    bot = await make_legacy_bot()

    warning = await coordinator.request_delete(bot.id, OWNER)

    assert isinstance(warning, LegacyWarning)
    assert warning.legacy_address == "LegacyBotAddress999"
    assert not (await runtime.trading_bots.find_by_id(bot.id)).is_deleted

    outcome = await coordinator.acknowledge_legacy_delete(warning.operation_id, OWNER)

    assert isinstance(outcome, Deleted)
    assert (await runtime.trading_bots.find_by_id(bot.id)).is_deleted
    operation = await runtime.operations.find_by_id(warning.operation_id)
    assert operation.status == OperationStatus.SUCCESS


@pytest.mark.asyncio
async def test_legacy_warning_can_be_abandoned(coordinator, runtime, make_legacy_bot):
    """Test: Walking away from a legacy warning keeps the bot and frees it"""
    bot = await make_legacy_bot()
    warning = await coordinator.request_delete(bot.id, OWNER)

    operation = await coordinator.abandon_operation(warning.operation_id, OWNER)

    assert operation.status == OperationStatus.ABANDONED
    assert not (await runtime.trading_bots.find_by_id(bot.id)).is_deleted
    assert await runtime.locks.holder(f"trading_bot:{bot.id}") is None
