"""
Trading Bots Pydantic schemas.

DTOs for API request/response validation.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from custody.domain.models.trading_bot import TradingBot


class CreateTradingBotRequest(BaseModel):
    """Schema for registering a trading bot."""
    name: str = Field(..., min_length=1, max_length=100, description="Bot name")
    market: str = Field(..., min_length=1, max_length=50, description="Market the bot trades")
    leverage: int = Field(1, ge=1, le=100, description="Leverage")
    is_active: bool = Field(False, description="Start the bot immediately")

    model_config = {
        "json_schema_extra": {
            "example": {"name": "SOL momentum", "market": "SOL-PERP", "leverage": 3, "is_active": False}
        }
    }


class ConfirmDeleteRequest(BaseModel):
    """Schema for finalizing a bot deletion."""
    tx_signature: Optional[str] = Field(None, description="Confirmed sweep transaction signature")


class TradingBotResponse(BaseModel):
    """Schema for trading bot response."""
    id: str = Field(..., description="Bot ID")
    owner_address: str
    agent_wallet_id: Optional[str] = None
    name: str
    market: str
    is_active: bool
    leverage: int
    subaccount_index: Optional[int] = None
    legacy_address: Optional[str] = None
    created_at: datetime
    deleted_at: Optional[datetime] = None
    delete_tx_signature: Optional[str] = None

    @classmethod
    def from_model(cls, bot: TradingBot) -> "TradingBotResponse":
        return cls(
            id=bot.id,
            owner_address=bot.owner_address,
            agent_wallet_id=bot.agent_wallet_id,
            name=bot.name,
            market=bot.market,
            is_active=bot.is_active,
            leverage=bot.leverage,
            subaccount_index=bot.subaccount_index,
            legacy_address=bot.legacy_address,
            created_at=bot.created_at,
            deleted_at=bot.deleted_at,
            delete_tx_signature=bot.delete_tx_signature,
        )
