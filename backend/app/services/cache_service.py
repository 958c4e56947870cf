"""
Read-through cache for project assignment queries.

Entries are projections of the authoritative stores and are never treated
as source of truth. A failing cache must not fail the caller: every Redis
error is logged and reported as a miss (reads) or as zero evictions
(invalidation).
"""

from typing import Iterable, Optional

from aws_lambda_powertools import Logger
from redis.exceptions import RedisError

LOG = Logger(serialize_stacktrace=False)

SCAN_BATCH_SIZE = 500


def threat_models_key(project_id, status: Optional[str] = None) -> str:
    key = f"project:{project_id}:threat_models"
    if status:
        key = f"{key}:{status}"
    return key


def threat_models_pattern(project_id) -> str:
    return f"project:{project_id}:threat_models*"


def project_exists_key(project_id) -> str:
    return f"project:{project_id}:exists"


def project_count_key(project_id) -> str:
    return f"project:{project_id}:total_threat_model_count"


class CacheService:
    def __init__(self, redis_client):
        self.redis = redis_client

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.redis.get(key)
        except RedisError as e:
            LOG.warning(f"Cache read failed for {key}: {e}")
            return None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        """Store a value; ``ttl_seconds=None`` keeps it until evicted."""
        try:
            await self.redis.set(key, value, ex=ttl_seconds)
            return True
        except RedisError as e:
            LOG.warning(f"Cache write failed for {key}: {e}")
            return False

    async def invalidate_keys(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        try:
            return await self.redis.delete(*keys)
        except RedisError as e:
            LOG.warning(f"Cache invalidation failed for {len(keys)} keys: {e}")
            return 0

    async def invalidate_pattern(self, pattern: str, extra_keys: Iterable[str] = ()) -> int:
        """
        Delete every key matching ``pattern`` plus ``extra_keys``.

        Uses SCAN so a large keyspace does not block the server.
        """
        try:
            keys = [
                key
                async for key in self.redis.scan_iter(match=pattern, count=SCAN_BATCH_SIZE)
            ]
        except RedisError as e:
            LOG.warning(f"Cache scan failed for pattern {pattern}: {e}")
            keys = []

        keys.extend(extra_keys)
        removed = await self.invalidate_keys(keys)
        LOG.info(f"Cleared cache for pattern {pattern}, {removed} keys removed")
        return removed
