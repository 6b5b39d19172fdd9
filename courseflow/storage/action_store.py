"""Flow action catalog storage."""

from datetime import datetime

from redis.asyncio import Redis

from courseflow.models.action import FlowAction, Scope
from courseflow.storage.redis_client import RedisKeys, get_redis


class ActionStore:
    """Flow action storage operations using Redis."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def create(self, action: FlowAction) -> FlowAction:
        """Create a new flow action.

        The action receives the next creation sequence number, used to break
        execution_order ties.

        Args:
            action: Action to create

        Returns:
            Created action
        """
        action.sequence = int(await self.redis.incr(RedisKeys.ACTION_SEQUENCE))
        await self._write(action)

        await self.redis.sadd(RedisKeys.ACTION_ALL, action.action_id)
        await self.redis.sadd(RedisKeys.action_scope(action.scope.key), action.action_id)
        await self.redis.sadd(RedisKeys.action_org(action.organization_id), action.action_id)
        return action

    async def get(self, action_id: str) -> FlowAction | None:
        """Get a flow action by ID.

        Args:
            action_id: Action ID

        Returns:
            Action if found, None otherwise
        """
        data = await self.redis.hget(RedisKeys.action_detail(action_id), "config")
        if not data:
            return None
        return FlowAction.model_validate_json(data)

    async def get_many(self, action_ids: list[str]) -> dict[str, FlowAction]:
        """Load several actions at once, skipping missing ones."""
        if not action_ids:
            return {}
        pipe = self.redis.pipeline(transaction=False)
        for action_id in action_ids:
            pipe.hget(RedisKeys.action_detail(action_id), "config")
        results = await pipe.execute()
        actions = {}
        for data in results:
            if data:
                action = FlowAction.model_validate_json(data)
                actions[action.action_id] = action
        return actions

    async def update(self, action_id: str, action: FlowAction) -> FlowAction | None:
        """Update an existing flow action.

        Scope, organization and sequence are fixed at creation.

        Args:
            action_id: Action ID to update
            action: Updated action data

        Returns:
            Updated action if found, None otherwise
        """
        existing = await self.get(action_id)
        if not existing:
            return None

        action.scope = existing.scope
        action.organization_id = existing.organization_id
        action.sequence = existing.sequence
        action.metadata.created_at = existing.metadata.created_at
        action.metadata.updated_at = datetime.utcnow()
        action.metadata.version = existing.metadata.version + 1

        await self._write(action)
        return action

    async def delete(self, action_id: str) -> bool:
        """Hard-delete a flow action.

        Args:
            action_id: Action ID to delete

        Returns:
            True if deleted, False if not found
        """
        existing = await self.get(action_id)
        if not existing:
            return False

        await self.redis.srem(RedisKeys.action_scope(existing.scope.key), action_id)
        await self.redis.srem(RedisKeys.action_org(existing.organization_id), action_id)
        await self.redis.srem(RedisKeys.ACTION_ALL, action_id)
        await self.redis.delete(RedisKeys.action_detail(action_id))
        return True

    async def list_all(self) -> list[FlowAction]:
        """List all flow actions."""
        action_ids = await self.redis.smembers(RedisKeys.ACTION_ALL)
        return self._ordered(await self.get_many(list(action_ids)))

    async def list_by_scope(self, scope: Scope, include_inactive: bool = False) -> list[FlowAction]:
        """List the actions of a course or session.

        Args:
            scope: Course or session
            include_inactive: Also return deactivated actions

        Returns:
            Actions sorted by (execution_order, sequence)
        """
        action_ids = await self.redis.smembers(RedisKeys.action_scope(scope.key))
        actions = self._ordered(await self.get_many(list(action_ids)))
        if include_inactive:
            return actions
        return [a for a in actions if a.is_active]

    async def list_by_organization(self, organization_id: str) -> list[FlowAction]:
        """List every action of an organization."""
        action_ids = await self.redis.smembers(RedisKeys.action_org(organization_id))
        return self._ordered(await self.get_many(list(action_ids)))

    async def set_active(self, action_id: str, is_active: bool) -> FlowAction | None:
        """Set the action's active flag.

        Args:
            action_id: Action ID
            is_active: New active flag

        Returns:
            Updated action, None if not found
        """
        action = await self.get(action_id)
        if not action:
            return None

        action.is_active = is_active
        action.metadata.updated_at = datetime.utcnow()
        await self._write(action)
        return action

    async def reorder(self, scope: Scope, ordered_ids: list[str]) -> list[FlowAction]:
        """Rewrite execution_order for a scope's actions.

        Args:
            scope: Course or session
            ordered_ids: Every action id of the scope, in the new order

        Returns:
            Actions in their new order

        Raises:
            ValueError: If the ids are not exactly the scope's actions
        """
        current = await self.list_by_scope(scope, include_inactive=True)
        known = {a.action_id: a for a in current}
        if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != set(known):
            raise ValueError("action_ids must list every action of the scope exactly once")

        reordered = []
        for position, action_id in enumerate(ordered_ids):
            action = known[action_id]
            if action.execution_order != position:
                action.execution_order = position
                action.metadata.updated_at = datetime.utcnow()
                await self._write(action)
            reordered.append(action)
        return reordered

    async def _write(self, action: FlowAction) -> None:
        await self.redis.hset(
            RedisKeys.action_detail(action.action_id),
            mapping={
                "config": action.model_dump_json(),
                "is_active": str(action.is_active).lower(),
                "scope": action.scope.key,
                "version": str(action.metadata.version),
                "created_at": str(int(action.metadata.created_at.timestamp() * 1000)),
                "updated_at": str(int(action.metadata.updated_at.timestamp() * 1000)),
            },
        )

    @staticmethod
    def _ordered(actions: dict[str, FlowAction]) -> list[FlowAction]:
        return sorted(actions.values(), key=lambda a: (a.scope.key, a.sort_key))
