"""
Capital Router

Endpoints:
- GET /api/v1/capital/snapshot - Available / deployed / total equity split
- GET /api/v1/capital/agent-wallet - The caller's agent wallet (created on first use)
"""

from fastapi import APIRouter, Depends, Query, status

from custody.core.dependencies import get_coordinator, get_wallet_address
from custody.core.responses import success_response
from custody.modules.capital.schemas import AgentWalletResponse
from custody.modules.lifecycle.service import CustodyCoordinator

router = APIRouter(prefix="/capital", tags=["Capital"])


@router.get("/snapshot")
async def get_snapshot(
    refresh: bool = Query(False, description="Read the ledger instead of the cached snapshot"),
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    """
    Current capital snapshot.

    Entries flagged `stale` carry the last known value of a subaccount the
    ledger could not be read for; `in_flight` marks targets of a running
    operation.
    """
    snapshot = await coordinator.get_snapshot(wallet_address, refresh=refresh)
    return success_response(
        status_code=status.HTTP_200_OK,
        message="Capital snapshot retrieved",
        data=snapshot.model_dump(mode="json"),
    )


@router.get("/agent-wallet")
async def get_agent_wallet(
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    wallet = await coordinator.get_or_create_agent_wallet(wallet_address)
    return success_response(
        status_code=status.HTTP_200_OK,
        message="Agent wallet retrieved",
        data=AgentWalletResponse.from_model(wallet).model_dump(mode="json"),
    )
