"""
Subaccount Repositories

Association rows (agent wallet subaccount ↔ trading bot) and the orphan
registry used by the cleanup job.
"""

from datetime import datetime, timezone
from typing import List, Optional

from bson import ObjectId

from custody.domain.models.subaccount import OrphanedSubaccount, OrphanStatus, SubaccountAssociation
from custody.infrastructure.db.repository import BaseRepository


class SubaccountRepository(BaseRepository[SubaccountAssociation]):
    """Repository for subaccount associations."""

    model = SubaccountAssociation

    def __init__(self, db=None):
        super().__init__("subaccounts", db)

    async def find_by_agent_wallet(self, agent_wallet_id: str) -> List[SubaccountAssociation]:
        return await self.find({"agent_wallet_id": agent_wallet_id}, sort=[("index", 1)])

    async def find_by_index(self, agent_wallet_id: str, index: int) -> Optional[SubaccountAssociation]:
        return await self.find_one({"agent_wallet_id": agent_wallet_id, "index": index})

    async def unlink_bot(self, agent_wallet_id: str, index: int) -> bool:
        """Clear the bot reference; the subaccount stays owned by the agent wallet."""
        return await self.update_one(
            {"agent_wallet_id": agent_wallet_id, "index": index},
            {"$set": {"trading_bot_id": None}}
        )

    async def remove(self, agent_wallet_id: str, index: int) -> bool:
        """Drop the row once the subaccount no longer exists on the venue."""
        return await self.delete_one({"agent_wallet_id": agent_wallet_id, "index": index})


class OrphanedSubaccountRepository(BaseRepository[OrphanedSubaccount]):
    """Repository for orphaned subaccounts awaiting cleanup."""

    model = OrphanedSubaccount

    def __init__(self, db=None):
        super().__init__("orphaned_subaccounts", db)

    async def register(self, orphan: OrphanedSubaccount) -> OrphanedSubaccount:
        """Register an orphan; re-registering an existing index is a no-op."""
        existing = await self.find_one({"agent_wallet_id": orphan.agent_wallet_id, "index": orphan.index})
        if existing and existing.status == OrphanStatus.PENDING:
            return existing
        if existing:
            orphan.id = existing.id
        return await self.save(orphan)

    async def find_pending(self) -> List[OrphanedSubaccount]:
        return await self.find({"status": OrphanStatus.PENDING.value}, sort=[("created_at", 1)])

    async def record_failure(self, orphan_id: str, error: str, max_retries: int) -> OrphanStatus:
        """
        Count a failed cleanup attempt.

        Returns:
            The orphan's status after the attempt (EXHAUSTED once max_retries is reached)
        """
        orphan = await self.find_by_id(orphan_id)
        if orphan is None:
            return OrphanStatus.RESOLVED

        orphan.retry_count += 1
        orphan.last_error = error
        orphan.updated_at = datetime.now(timezone.utc)
        if orphan.retry_count >= max_retries:
            orphan.status = OrphanStatus.EXHAUSTED
        await self.save(orphan)
        return orphan.status

    async def resolve(self, orphan_id: str) -> bool:
        now = datetime.now(timezone.utc)
        return await self.update_one(
            {"_id": ObjectId(orphan_id)},
            {"$set": {"status": OrphanStatus.RESOLVED.value, "resolved_at": now, "updated_at": now}}
        )
