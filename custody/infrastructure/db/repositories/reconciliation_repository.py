"""
Reconciliation Event Repository
"""

from typing import List

from custody.domain.models.reconciliation import ReconciliationEvent
from custody.infrastructure.db.repository import BaseRepository


class ReconciliationEventRepository(BaseRepository[ReconciliationEvent]):
    """Append-only store of detected drift."""

    model = ReconciliationEvent

    def __init__(self, db=None):
        super().__init__("reconciliation_events", db)

    async def find_by_bot(self, trading_bot_id: str, limit: int = 50) -> List[ReconciliationEvent]:
        return await self.find(
            {"trading_bot_id": trading_bot_id},
            limit=limit,
            sort=[("detected_at", -1)],
        )
