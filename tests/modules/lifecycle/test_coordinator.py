"""
Custody Coordinator Housekeeping Tests

Covers: resuming stalled operations, auto-abandoning stale signature waits,
owner checks on operation lookups.

Author: Custody Team
Last Updated: 2026-10-18
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from custody.domain.models.lifecycle import OperationStatus
from custody.shared.exceptions import InvalidOperationStateError, OperationNotFoundError
from tests.fakes import OWNER


def backdate(db, operation_id, field="updated_at", **delta):
    """Pretend the operation was last touched `delta` ago."""
    for document in db["lifecycle_operations"].documents:
        if str(document["_id"]) == operation_id:
            document[field] = datetime.now(timezone.utc) - timedelta(**delta)


# ==================== STALLED OPERATIONS ====================

@pytest.mark.asyncio
async def test_running_operation_is_not_resumed(coordinator, wallet):
    """Test: An operation touched within the stall window is still owned by its process"""
    operation = await coordinator.start_reset(OWNER)

    with pytest.raises(InvalidOperationStateError):
        await coordinator.resume_operation(operation.id, OWNER)


@pytest.mark.asyncio
async def test_stalled_reset_is_resumed(coordinator, runtime, db, wallet, make_bot):
    """Test: A reset left in_progress by a dead process runs to completion"""
    await make_bot(Decimal("0"))
    operation = await coordinator.start_reset(OWNER)
    backdate(db, operation.id, minutes=10)

    stalled = await coordinator.recover_stalled_operations()
    assert [item.id for item in stalled] == [operation.id]

    result = await coordinator.resume_operation(operation.id, OWNER)

    assert result["status"] == OperationStatus.SUCCESS.value
    assert await runtime.locks.holder(f"agent_wallet:{wallet.id}") is None


@pytest.mark.asyncio
async def test_only_in_progress_operations_resume(coordinator, make_bot):
    bot = await make_bot(Decimal("10"))
    outcome = await coordinator.request_delete(bot.id, OWNER)

    with pytest.raises(InvalidOperationStateError):
        await coordinator.resume_operation(outcome.operation_id, OWNER)


# ==================== AUTO-ABANDON ====================

@pytest.mark.asyncio
async def test_auto_abandon_is_off_by_default(coordinator, db, make_bot):
    bot = await make_bot(Decimal("10"))
    outcome = await coordinator.request_delete(bot.id, OWNER)
    backdate(db, outcome.operation_id, days=30)

    assert await coordinator.abandon_stale_operations() == 0


@pytest.mark.asyncio
async def test_stale_signature_wait_is_abandoned(coordinator, runtime, settings, db, make_bot):
    """Test: Only waits older than the configured window are abandoned"""
    settings.OPERATION_ABANDON_AFTER_HOURS = 24
    old_bot = await make_bot(Decimal("10"), name="Old")
    new_bot = await make_bot(Decimal("10"), name="New")
    old = await coordinator.request_delete(old_bot.id, OWNER)
    new = await coordinator.request_delete(new_bot.id, OWNER)
    backdate(db, old.operation_id, hours=25)

    assert await coordinator.abandon_stale_operations() == 1

    abandoned = await coordinator.get_operation(old.operation_id, OWNER)
    assert abandoned.status == OperationStatus.ABANDONED
    assert await runtime.locks.holder(f"trading_bot:{old_bot.id}") is None
    assert (await coordinator.get_operation(new.operation_id, OWNER)).status == OperationStatus.AWAITING_SIGNATURE


# ==================== LOOKUPS ====================

@pytest.mark.asyncio
async def test_unknown_operation(coordinator):
    with pytest.raises(OperationNotFoundError):
        await coordinator.get_operation("not-an-id", OWNER)


@pytest.mark.asyncio
async def test_list_operations_newest_first(coordinator, db, make_bot):
    first = await coordinator.request_delete((await make_bot(Decimal("0"), name="A")).id, OWNER)
    second = await coordinator.request_delete((await make_bot(Decimal("0"), name="B")).id, OWNER)
    backdate(db, first.operation_id, field="created_at", minutes=1)

    operations = await coordinator.list_operations(OWNER)

    assert [operation.id for operation in operations] == [second.operation_id, first.operation_id]
