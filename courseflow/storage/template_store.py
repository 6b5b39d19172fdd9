"""Message template storage."""

from redis.asyncio import Redis

from courseflow.models.template import MessageTemplate
from courseflow.storage.redis_client import RedisKeys, get_redis


class TemplateStore:
    """Email and notification templates by id."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def get(self, template_id: str) -> MessageTemplate | None:
        data = await self.redis.get(RedisKeys.template(template_id))
        if not data:
            return None
        return MessageTemplate.model_validate_json(data)

    async def save(self, template: MessageTemplate) -> MessageTemplate:
        await self.redis.set(RedisKeys.template(template.template_id), template.model_dump_json())
        return template

    async def delete(self, template_id: str) -> bool:
        return bool(await self.redis.delete(RedisKeys.template(template_id)))
