"""Redis client management."""

import redis.asyncio as redis
from redis.asyncio import Redis

from courseflow.core.config import get_settings

# Global connection pool
_pool: redis.ConnectionPool | None = None


async def init_redis_pool() -> None:
    """Initialize Redis connection pool."""
    global _pool
    if _pool is None:
        settings = get_settings()
        _pool = redis.ConnectionPool.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=settings.dispatch_pool_size * 2 + 10,
        )


async def close_redis_pool() -> None:
    """Close Redis connection pool."""
    global _pool
    if _pool is not None:
        await _pool.disconnect()
        _pool = None


def get_redis() -> Redis:
    """Get Redis client from pool.

    Returns:
        Redis client instance

    Raises:
        RuntimeError: If pool not initialized
    """
    if _pool is None:
        raise RuntimeError("Redis pool not initialized. Call init_redis_pool() first.")
    return redis.Redis(connection_pool=_pool)


class RedisKeys:
    """Redis key patterns."""

    # Flow actions
    ACTION_DETAIL = "flow:actions:detail:{action_id}"
    ACTION_SCOPE = "flow:actions:scope:{scope_key}"
    ACTION_ORG = "flow:actions:org:{organization_id}"
    ACTION_ALL = "flow:actions:all"
    ACTION_SEQUENCE = "flow:actions:sequence"

    # Execution ledger
    RECORD = "flow:exec:record:{record_id}"
    RECORDS_BY_ACTION = "flow:exec:action:{action_id}"
    RECORDS_BY_SUBJECT = "flow:exec:subject:{subject_id}"
    DUE = "flow:exec:due"
    CLAIMS = "flow:exec:claims"
    DEAD_LETTER = "flow:exec:dead_letter"

    # Event source snapshots
    SUBJECT = "flow:subjects:detail:{subject_id}"
    SUBJECTS_BY_SCOPE = "flow:subjects:scope:{scope_key}"

    # Organizations and templates
    ORGANIZATION = "flow:orgs:{organization_id}"
    TEMPLATE = "flow:templates:{template_id}"

    # Auxiliary
    PROCESSED = "flow:processed:{event_id}"
    DELIVERED = "flow:delivered:{idempotency_key}"

    @classmethod
    def action_detail(cls, action_id: str) -> str:
        return cls.ACTION_DETAIL.format(action_id=action_id)

    @classmethod
    def action_scope(cls, scope_key: str) -> str:
        return cls.ACTION_SCOPE.format(scope_key=scope_key)

    @classmethod
    def action_org(cls, organization_id: str) -> str:
        return cls.ACTION_ORG.format(organization_id=organization_id)

    @classmethod
    def record(cls, record_id: str) -> str:
        return cls.RECORD.format(record_id=record_id)

    @classmethod
    def records_by_action(cls, action_id: str) -> str:
        return cls.RECORDS_BY_ACTION.format(action_id=action_id)

    @classmethod
    def records_by_subject(cls, subject_id: str) -> str:
        return cls.RECORDS_BY_SUBJECT.format(subject_id=subject_id)

    @classmethod
    def subject(cls, subject_id: str) -> str:
        return cls.SUBJECT.format(subject_id=subject_id)

    @classmethod
    def subjects_by_scope(cls, scope_key: str) -> str:
        return cls.SUBJECTS_BY_SCOPE.format(scope_key=scope_key)

    @classmethod
    def organization(cls, organization_id: str) -> str:
        return cls.ORGANIZATION.format(organization_id=organization_id)

    @classmethod
    def template(cls, template_id: str) -> str:
        return cls.TEMPLATE.format(template_id=template_id)

    @classmethod
    def processed(cls, event_id: str) -> str:
        return cls.PROCESSED.format(event_id=event_id)

    @classmethod
    def delivered(cls, idempotency_key: str) -> str:
        return cls.DELIVERED.format(idempotency_key=idempotency_key)
