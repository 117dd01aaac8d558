"""
Lifecycle Operations Router

Endpoints:
- GET /api/v1/operations - List the caller's operations
- GET /api/v1/operations/{id} - Get an operation with its step log
- POST /api/v1/operations/{id}/signature - Resume with a signed transaction
- POST /api/v1/operations/{id}/reject - Decline the pending signature
- POST /api/v1/operations/{id}/acknowledge - Delete a legacy bot anyway
- POST /api/v1/operations/{id}/retry - Re-run the failed suffix
- POST /api/v1/operations/{id}/resume - Continue a stalled operation
- POST /api/v1/operations/{id}/recheck - Re-poll an unconfirmed transaction
- POST /api/v1/operations/{id}/abandon - Give up on a suspended operation
- POST /api/v1/operations/reset-account - Reset the agent wallet's subaccounts (NDJSON stream)
- POST /api/v1/operations/reset-agent-wallet - Rotate the agent wallet (NDJSON stream)

Author: Custody Team
Last Updated: 2026-10-18
"""

import json
from typing import Any, AsyncIterator, Dict

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse

from custody.core.dependencies import get_coordinator, get_wallet_address
from custody.core.responses import success_response
from custody.domain.models.lifecycle import LifecycleOperation
from custody.modules.lifecycle.delete_saga import outcome_to_dict
from custody.modules.lifecycle.schemas import (
    AbandonOperationRequest,
    RejectSignatureRequest,
    ResetAccountRequest,
    SubmitSignatureRequest,
    operation_to_dict,
)
from custody.modules.lifecycle.service import CustodyCoordinator
from custody.shared.exceptions import AppException
from custody.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/operations", tags=["Lifecycle Operations"])


async def _ndjson(
    coordinator: CustodyCoordinator,
    operation: LifecycleOperation
) -> AsyncIterator[str]:
    """One JSON event per line. A failure mid-stream becomes a final error event."""
    try:
        async for event in coordinator.run_operation(operation):
            yield json.dumps(event, default=str) + "\n"
    except AppException as e:
        logger.error(f"[{operation.id}] Stream aborted: {e.message}")
        yield json.dumps({
            "operation_id": operation.id,
            "step": "complete",
            "status": "error",
            "error": {"code": e.code, "message": e.message},
        }) + "\n"


def _stream(coordinator: CustodyCoordinator, operation: LifecycleOperation) -> StreamingResponse:
    return StreamingResponse(
        _ndjson(coordinator, operation),
        media_type="application/x-ndjson",
        headers={"X-Operation-Id": operation.id},
    )


# ==================== RESETS ====================

@router.post("/reset-account")
async def reset_account(
    request: ResetAccountRequest,
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    """
    Close, settle, sweep, withdraw and delete every subaccount.

    Streams `{step, status}` events as NDJSON until a terminal `complete`
    event, or an `awaiting_signature` event when the withdrawal needs the
    caller's signature.
    """
    operation = await coordinator.start_reset(wallet_address, request.policy)
    return _stream(coordinator, operation)


@router.post("/reset-agent-wallet")
async def reset_agent_wallet(
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    """Rotate the agent wallet. Requires no open positions and empty subaccounts."""
    operation = await coordinator.start_wallet_rotation(wallet_address)
    return _stream(coordinator, operation)


# ==================== OPERATIONS ====================

@router.get("")
async def list_operations(
    limit: int = Query(50, ge=1, le=200),
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    operations = await coordinator.list_operations(wallet_address, limit=limit)
    return success_response(
        status_code=status.HTTP_200_OK,
        message="Operations retrieved",
        data=[operation_to_dict(operation) for operation in operations],
    )


@router.get("/{operation_id}")
async def get_operation(
    operation_id: str,
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    operation = await coordinator.get_operation(operation_id, wallet_address)
    return success_response(
        status_code=status.HTTP_200_OK,
        message="Operation retrieved",
        data=operation_to_dict(operation),
    )


@router.post("/{operation_id}/signature")
async def submit_signature(
    operation_id: str,
    request: SubmitSignatureRequest,
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    result = await coordinator.submit_signature(operation_id, request.signed_tx, wallet_address)
    return _result_response("Signature submitted", result)


@router.post("/{operation_id}/reject")
async def reject_signature(
    operation_id: str,
    request: RejectSignatureRequest,
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    """Declining cancels the current step only; completed steps stand."""
    result = await coordinator.reject_signature(operation_id, wallet_address, request.reason)
    return _result_response("Signature rejected", result)


@router.post("/{operation_id}/acknowledge")
async def acknowledge_legacy_delete(
    operation_id: str,
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    outcome = await coordinator.acknowledge_legacy_delete(operation_id, wallet_address)
    return _result_response("Legacy bot deleted", outcome_to_dict(outcome))


@router.post("/{operation_id}/retry")
async def retry_operation(
    operation_id: str,
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    result = await coordinator.retry_operation(operation_id, wallet_address)
    return _result_response("Operation retried", result)


@router.post("/{operation_id}/resume")
async def resume_operation(
    operation_id: str,
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    result = await coordinator.resume_operation(operation_id, wallet_address)
    return _result_response("Operation resumed", result)


@router.post("/{operation_id}/recheck")
async def recheck_operation(
    operation_id: str,
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    """Re-poll the ledger for an unconfirmed transaction. Never resubmits."""
    result = await coordinator.recheck_operation(operation_id, wallet_address)
    return _result_response("Operation re-checked", result)


@router.post("/{operation_id}/abandon")
async def abandon_operation(
    operation_id: str,
    request: AbandonOperationRequest,
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    operation = await coordinator.abandon_operation(operation_id, wallet_address, request.reason)
    return success_response(
        status_code=status.HTTP_200_OK,
        message="Operation abandoned",
        data=operation_to_dict(operation),
    )


def _result_response(message: str, result: Dict[str, Any]) -> dict:
    return success_response(
        status_code=status.HTTP_200_OK,
        message=message,
        data=json.loads(json.dumps(result, default=str)),
    )
