"""
Operation Lock Service

Single-flight guard for lifecycle operations. One lock document per target
key (`trading_bot:<id>`, `agent_wallet:<id>`); a second operation on a locked
target is rejected, never queued.

Locks carry no expiry: an operation suspended on a user signature may wait
indefinitely. They are released when the operation reaches a terminal status.

Author: Custody Team
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from custody.config.database import get_database
from custody.domain.models.lifecycle import TargetType
from custody.shared.exceptions import OperationInProgressError
from custody.utils.logger import get_logger

logger = get_logger(__name__)

LOCK_COLLECTION = "lifecycle_locks"


def lock_key(target_type: TargetType, target_id: str) -> str:
    return f"{target_type.value}:{target_id}"


class OperationLockService:
    """Atomic lock documents keyed by `_id`."""

    def __init__(self, db: Optional[AsyncIOMotorDatabase] = None):
        self._db = db

    def _collection(self):
        db = self._db if self._db is not None else get_database()
        return db[LOCK_COLLECTION]

    async def acquire(self, keys: Iterable[str], operation_id: str) -> List[str]:
        """
        Acquire every key or none.

        Raises:
            OperationInProgressError: If any key is held by another operation
        """
        acquired: List[str] = []
        now = datetime.now(timezone.utc)

        for key in keys:
            try:
                await self._collection().insert_one({
                    "_id": key,
                    "operation_id": operation_id,
                    "acquired_at": now,
                })
                acquired.append(key)
            except DuplicateKeyError:
                holder = await self.holder(key)
                if holder == operation_id:
                    # Re-entrant: resuming an operation that already owns the key
                    acquired.append(key)
                    continue

                logger.info(f"Lock {key} is held by operation {holder}; rejecting {operation_id}")
                await self.release(acquired, operation_id)
                raise OperationInProgressError(
                    message=f"Another operation is already in progress for {key}",
                    operation_id=holder,
                )

        logger.debug(f"Operation {operation_id} acquired locks {acquired}")
        return acquired

    async def release(self, keys: Iterable[str], operation_id: str) -> int:
        """Release keys owned by the operation. Keys held by others are left alone."""
        released = 0
        for key in keys:
            result = await self._collection().delete_one({"_id": key, "operation_id": operation_id})
            released += result.deleted_count
        if released:
            logger.debug(f"Operation {operation_id} released {released} lock(s)")
        return released

    async def holder(self, key: str) -> Optional[str]:
        document = await self._collection().find_one({"_id": key})
        return document.get("operation_id") if document else None

    async def holders(self, keys: Iterable[str]) -> Dict[str, str]:
        """Map of locked key -> owning operation id, for the keys that are locked."""
        keys = list(keys)
        if not keys:
            return {}
        documents = await self._collection().find({"_id": {"$in": keys}}).to_list(length=None)
        return {document["_id"]: document["operation_id"] for document in documents}
