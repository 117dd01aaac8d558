"""
Trading Bots Router

Endpoints:
- POST /api/v1/bots - Register a bot (allocates its subaccount)
- GET /api/v1/bots - List the caller's bots
- DELETE /api/v1/bots/{id} - Request deletion (deleted | legacy_warning | sweep_required)
- POST /api/v1/bots/{id}/confirm-delete - Finalize a deletion after the sweep confirmed

Author: Custody Team
Last Updated: 2026-10-18
"""

from fastapi import APIRouter, Depends, Query, status

from custody.core.dependencies import get_coordinator, get_wallet_address
from custody.core.responses import success_response
from custody.modules.bots.schemas import (
    ConfirmDeleteRequest,
    CreateTradingBotRequest,
    TradingBotResponse,
)
from custody.modules.lifecycle.delete_saga import outcome_to_dict
from custody.modules.lifecycle.service import CustodyCoordinator
from custody.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/bots", tags=["Trading Bots"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_trading_bot(
    request: CreateTradingBotRequest,
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    """Register a bot on the next free subaccount of the caller's agent wallet."""
    bot = await coordinator.create_trading_bot(
        wallet_address,
        name=request.name,
        market=request.market,
        leverage=request.leverage,
        is_active=request.is_active,
    )
    return success_response(
        status_code=status.HTTP_201_CREATED,
        message="Trading bot created",
        data=TradingBotResponse.from_model(bot).model_dump(mode="json"),
    )


@router.get("")
async def list_trading_bots(
    include_deleted: bool = Query(False, description="Include soft-deleted bots"),
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    bots = await coordinator.list_trading_bots(wallet_address, include_deleted=include_deleted)
    return success_response(
        status_code=status.HTTP_200_OK,
        message="Trading bots retrieved",
        data=[TradingBotResponse.from_model(bot).model_dump(mode="json") for bot in bots],
    )


@router.delete("/{bot_id}")
async def request_delete(
    bot_id: str,
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    """
    Request deletion of a bot.

    A funded subaccount returns `sweep_required` with the unsigned sweep; sign
    it and POST it to /operations/{operation_id}/signature.
    """
    outcome = await coordinator.request_delete(bot_id, wallet_address)
    logger.info(f"Delete requested for bot {bot_id}: {outcome.outcome}")
    return success_response(
        status_code=status.HTTP_200_OK,
        message=f"Delete request: {outcome.outcome}",
        data=outcome_to_dict(outcome),
    )


@router.post("/{bot_id}/confirm-delete")
async def confirm_delete(
    bot_id: str,
    request: ConfirmDeleteRequest,
    wallet_address: str = Depends(get_wallet_address),
    coordinator: CustodyCoordinator = Depends(get_coordinator)
):
    """Idempotent finalize; repeating it with the same signature is a no-op."""
    outcome = await coordinator.confirm_delete(bot_id, wallet_address, request.tx_signature)
    return success_response(
        status_code=status.HTTP_200_OK,
        message=f"Confirm delete: {outcome.outcome}",
        data=outcome_to_dict(outcome),
    )
