"""
Snapshot Stores

Where published CapitalSnapshots live. Publishing replaces the whole snapshot
under one key, so a reader gets either the previous split or the new one,
never a mix.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

import redis.asyncio as redis

from custody.domain.models.capital import CapitalSnapshot
from custody.utils.cache import generate_cache_key, get_redis_client
from custody.utils.logger import get_logger

logger = get_logger(__name__)

SNAPSHOT_KEY_PREFIX = "capital_snapshot"


class SnapshotStore(ABC):

    @abstractmethod
    async def get(self, agent_wallet_id: str) -> Optional[CapitalSnapshot]:
        pass

    @abstractmethod
    async def publish(self, snapshot: CapitalSnapshot) -> None:
        pass


class InMemorySnapshotStore(SnapshotStore):
    """Process-local store (tests, single-process deployments)."""

    def __init__(self):
        self._snapshots: Dict[str, CapitalSnapshot] = {}

    async def get(self, agent_wallet_id: str) -> Optional[CapitalSnapshot]:
        return self._snapshots.get(agent_wallet_id)

    async def publish(self, snapshot: CapitalSnapshot) -> None:
        self._snapshots[snapshot.agent_wallet_id] = snapshot


class RedisSnapshotStore(SnapshotStore):
    """
    Redis-backed store shared by the API and the Celery workers.

    Args:
        ttl_seconds: Expiry of a published snapshot
        client: Redis client (defaults to the shared application client)
    """

    def __init__(self, ttl_seconds: int, client: Optional[redis.Redis] = None):
        self.ttl_seconds = ttl_seconds
        self._client = client

    async def _redis(self) -> redis.Redis:
        if self._client is None:
            self._client = await get_redis_client()
        return self._client

    async def get(self, agent_wallet_id: str) -> Optional[CapitalSnapshot]:
        client = await self._redis()
        raw = await client.get(generate_cache_key(SNAPSHOT_KEY_PREFIX, agent_wallet_id))
        if raw is None:
            return None
        return CapitalSnapshot.model_validate_json(raw)

    async def publish(self, snapshot: CapitalSnapshot) -> None:
        client = await self._redis()
        await client.set(
            generate_cache_key(SNAPSHOT_KEY_PREFIX, snapshot.agent_wallet_id),
            snapshot.model_dump_json(),
            ex=self.ttl_seconds,
        )
        logger.debug(f"Published capital snapshot for {snapshot.agent_wallet_id}")
