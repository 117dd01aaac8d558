"""
Lifecycle Operation Repository
"""

from datetime import datetime
from typing import Iterable, List, Optional

from custody.domain.models.lifecycle import (
    TERMINAL_STATUSES,
    LifecycleOperation,
    OperationStatus,
    TargetType,
)
from custody.infrastructure.db.repository import BaseRepository


class LifecycleOperationRepository(BaseRepository[LifecycleOperation]):
    """Repository for lifecycle operations (saga records)."""

    model = LifecycleOperation

    def __init__(self, db=None):
        super().__init__("lifecycle_operations", db)

    async def find_active_for_target(
        self,
        target_type: TargetType,
        target_id: str
    ) -> Optional[LifecycleOperation]:
        """Latest non-terminal operation on a target."""
        operations = await self.find(
            {
                "target_type": target_type.value,
                "target_id": target_id,
                "status": {"$nin": [status.value for status in TERMINAL_STATUSES]},
            },
            limit=1,
            sort=[("created_at", -1)],
        )
        return operations[0] if operations else None

    async def find_by_status(self, statuses: Iterable[OperationStatus]) -> List[LifecycleOperation]:
        return await self.find(
            {"status": {"$in": [status.value for status in statuses]}},
            sort=[("created_at", 1)],
        )

    async def find_awaiting_signature_before(self, cutoff: datetime) -> List[LifecycleOperation]:
        """Operations suspended on a signature since before the cutoff."""
        return await self.find({
            "status": OperationStatus.AWAITING_SIGNATURE.value,
            "updated_at": {"$lt": cutoff},
        })

    async def find_by_owner(self, owner_address: str, limit: int = 50) -> List[LifecycleOperation]:
        return await self.find({"owner_address": owner_address}, limit=limit, sort=[("created_at", -1)])
