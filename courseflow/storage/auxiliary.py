"""Auxiliary storage operations (event idempotency, delivery markers, dead letters)."""

import json
from datetime import datetime, timezone

from redis.asyncio import Redis

from courseflow.core.config import get_settings
from courseflow.models.execution import ExecutionRecord
from courseflow.storage.redis_client import RedisKeys, get_redis


class IdempotencyStore:
    """Lifecycle event dedup."""

    TTL_SECONDS = 24 * 3600

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def is_processed(self, event_id: str) -> bool:
        return await self.redis.exists(RedisKeys.processed(event_id)) > 0

    async def mark_processed(self, event_id: str) -> bool:
        """Record that an event was applied.

        Returns:
            False if another delivery of the event got there first
        """
        result = await self.redis.set(RedisKeys.processed(event_id), "1", nx=True, ex=self.TTL_SECONDS)
        return bool(result)


class DeliveryLog:
    """Local "already delivered" markers keyed by execution idempotency key.

    A marker is written after a channel performed its side effect and before
    the ledger records the outcome; a retried dispatch that finds the marker
    reports success without repeating the effect.
    """

    def __init__(self, redis: Redis | None = None):
        self._redis = redis
        self._settings = get_settings()

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def get(self, idempotency_key: str) -> dict | None:
        """Get the marker for a key.

        Returns:
            Marker payload if the effect was already performed
        """
        data = await self.redis.get(RedisKeys.delivered(idempotency_key))
        if data:
            return json.loads(data)
        return None

    async def mark(self, idempotency_key: str, channel: str, reference: str | None = None) -> bool:
        """Record that the effect for a key was performed.

        Returns:
            True if newly marked
        """
        payload = {
            "channel": channel,
            "reference": reference,
            "delivered_at": datetime.now(timezone.utc).isoformat(),
        }
        result = await self.redis.set(
            RedisKeys.delivered(idempotency_key),
            json.dumps(payload),
            nx=True,
            ex=self._settings.dedup_ttl_seconds,
        )
        return bool(result)


class DeadLetterQueue:
    """Terminal failures surfaced to operators, newest first, capped in length."""

    def __init__(self, redis: Redis | None = None, max_length: int | None = None):
        self._redis = redis
        self._max_length = max_length or get_settings().dead_letter_max_length

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def push(self, record: ExecutionRecord) -> None:
        """Append a failed record snapshot.

        Args:
            record: Record in its terminal failed state
        """
        pipe = self.redis.pipeline(transaction=True)
        pipe.lpush(RedisKeys.DEAD_LETTER, record.model_dump_json())
        pipe.ltrim(RedisKeys.DEAD_LETTER, 0, self._max_length - 1)
        await pipe.execute()

    async def list(self, limit: int = 100) -> list[ExecutionRecord]:
        """Most recent dead letters first."""
        values = await self.redis.lrange(RedisKeys.DEAD_LETTER, 0, limit - 1)
        return [ExecutionRecord.model_validate_json(v) for v in values]

    async def length(self) -> int:
        return await self.redis.llen(RedisKeys.DEAD_LETTER)
