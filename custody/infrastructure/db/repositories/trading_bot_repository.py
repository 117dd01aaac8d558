"""
Trading Bot Repository
"""

from datetime import datetime, timezone
from typing import List, Optional

from bson import ObjectId

from custody.domain.models.trading_bot import TradingBot
from custody.infrastructure.db.repository import BaseRepository


class TradingBotRepository(BaseRepository[TradingBot]):
    """Repository for trading bots."""

    model = TradingBot

    def __init__(self, db=None):
        super().__init__("trading_bots", db)

    async def find_by_owner(self, owner_address: str, include_deleted: bool = False) -> List[TradingBot]:
        filter = {"owner_address": owner_address}
        if not include_deleted:
            filter["deleted_at"] = None
        return await self.find(filter, sort=[("created_at", -1)])

    async def find_by_agent_wallet(self, agent_wallet_id: str) -> List[TradingBot]:
        """Live (not deleted) bots whose subaccount belongs to the agent wallet."""
        return await self.find({"agent_wallet_id": agent_wallet_id, "deleted_at": None})

    async def find_active(self) -> List[TradingBot]:
        return await self.find({"is_active": True, "deleted_at": None})

    async def mark_deleted(self, bot_id: str, tx_signature: Optional[str]) -> bool:
        """
        Soft-delete a bot, at most once.

        Returns:
            True if this call deleted the bot, False if it was already deleted
        """
        now = datetime.now(timezone.utc)
        return await self.update_one(
            {"_id": ObjectId(bot_id), "deleted_at": None},
            {"$set": {
                "deleted_at": now,
                "delete_tx_signature": tx_signature,
                "is_active": False,
                "updated_at": now,
            }}
        )

    async def deactivate_and_unlink(self, bot_id: str) -> bool:
        """Stop the bot and drop its subaccount reference (the subaccount is gone)."""
        now = datetime.now(timezone.utc)
        return await self.update_one(
            {"_id": ObjectId(bot_id)},
            {"$set": {"is_active": False, "subaccount_index": None, "updated_at": now}}
        )
