"""Subject snapshot storage."""

from redis.asyncio import Redis

from courseflow.models.action import Scope
from courseflow.models.subject import Subject
from courseflow.storage.redis_client import RedisKeys, get_redis


class SubjectStore:
    """Latest lifecycle snapshot per subject, indexed by scope."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def save(self, subject: Subject) -> Subject:
        """Store a snapshot, replacing any previous one.

        Args:
            subject: Snapshot published by the event source

        Returns:
            Stored snapshot
        """
        previous = await self.get(subject.subject_id)

        pipe = self.redis.pipeline(transaction=True)
        if previous and previous.scope.key != subject.scope.key:
            pipe.srem(RedisKeys.subjects_by_scope(previous.scope.key), subject.subject_id)
        pipe.set(RedisKeys.subject(subject.subject_id), subject.model_dump_json())
        pipe.sadd(RedisKeys.subjects_by_scope(subject.scope.key), subject.subject_id)
        await pipe.execute()
        return subject

    async def get(self, subject_id: str) -> Subject | None:
        """Get a subject snapshot by ID."""
        data = await self.redis.get(RedisKeys.subject(subject_id))
        if not data:
            return None
        return Subject.model_validate_json(data)

    async def list_by_scope(self, scope: Scope) -> list[Subject]:
        """Snapshots of every subject of a course or session."""
        subject_ids = sorted(await self.redis.smembers(RedisKeys.subjects_by_scope(scope.key)))
        if not subject_ids:
            return []
        values = await self.redis.mget([RedisKeys.subject(s) for s in subject_ids])
        return [Subject.model_validate_json(v) for v in values if v]

    async def remove_scope(self, scope: Scope) -> int:
        """Drop the scope index after a course/session is deleted.

        Returns:
            Number of subjects that were indexed under the scope
        """
        key = RedisKeys.subjects_by_scope(scope.key)
        count = await self.redis.scard(key)
        await self.redis.delete(key)
        return count
