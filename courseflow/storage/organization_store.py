"""Organization settings storage."""

from redis.asyncio import Redis

from courseflow.core.config import get_settings
from courseflow.models.subject import OrganizationSettings
from courseflow.storage.redis_client import RedisKeys, get_redis


class OrganizationStore:
    """Per-organization timezone and pause flag."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis
        self._settings = get_settings()

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def get(self, organization_id: str) -> OrganizationSettings:
        """Get settings, falling back to defaults for unknown organizations."""
        data = await self.redis.hgetall(RedisKeys.organization(organization_id))
        return OrganizationSettings(
            organization_id=organization_id,
            timezone=data.get("timezone") or self._settings.default_timezone,
            paused=data.get("paused") == "true",
        )

    async def save(self, settings: OrganizationSettings) -> OrganizationSettings:
        await self.redis.hset(
            RedisKeys.organization(settings.organization_id),
            mapping={
                "timezone": settings.timezone,
                "paused": str(settings.paused).lower(),
            },
        )
        return settings

    async def set_paused(self, organization_id: str, paused: bool) -> OrganizationSettings:
        await self.redis.hset(
            RedisKeys.organization(organization_id),
            "paused",
            str(paused).lower(),
        )
        return await self.get(organization_id)
