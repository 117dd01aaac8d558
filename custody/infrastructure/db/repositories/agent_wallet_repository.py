"""
Agent Wallet Repository
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from bson import ObjectId

from custody.domain.models.agent_wallet import AgentWallet, AgentWalletStatus
from custody.infrastructure.db.repository import BaseRepository


class AgentWalletRepository(BaseRepository[AgentWallet]):
    """Repository for agent wallets."""

    model = AgentWallet

    def __init__(self, db=None):
        super().__init__("agent_wallets", db)

    async def find_active_by_owner(self, owner_address: str) -> Optional[AgentWallet]:
        return await self.find_one({
            "owner_address": owner_address,
            "status": AgentWalletStatus.ACTIVE.value,
        })

    async def find_all_active(self) -> List[AgentWallet]:
        return await self.find({"status": AgentWalletStatus.ACTIVE.value})

    async def update_cached_balance(
        self,
        agent_wallet_id: str,
        balance: Decimal,
        synced_at: datetime
    ) -> bool:
        """Write the aggregator's latest available balance into the cache fields."""
        return await self.update_one(
            {"_id": ObjectId(agent_wallet_id)},
            {"$set": {
                "available_balance": str(balance),
                "last_synced_at": synced_at,
                "updated_at": synced_at,
            }}
        )
