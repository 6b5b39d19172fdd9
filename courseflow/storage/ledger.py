"""Execution ledger: durable execution records and their state transitions.

Every status change goes through a WATCH/MULTI/EXEC transaction on the record
key, so a transition is a conditional update: it only applies if the record is
still in the state the caller observed. The claim is the strictest of these
(``scheduled`` with no ``claimed_by`` -> ``claimed``) and is the single point
of mutual exclusion between workers.

Index keys kept in the same transaction as the record:
    DUE     sorted set of scheduled records scored by scheduled_for
    CLAIMS  sorted set of claimed/running records scored by claimed_at
"""

from collections import Counter
from datetime import datetime
from typing import Any, Callable

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import WatchError

from courseflow.core.exceptions import ConflictError, InvalidTransitionError, NotFoundError
from courseflow.core.logging import get_logger
from courseflow.models.execution import (
    IN_FLIGHT_STATUSES,
    ExecutionRecord,
    ExecutionStatus,
    can_transition,
)
from courseflow.storage.redis_client import RedisKeys, get_redis

logger = get_logger(__name__)

MAX_CONFLICT_RETRIES = 10
INTERRUPTED_REASON = "Claim expired while running"

Mutation = Callable[[ExecutionRecord], ExecutionRecord | None]


class ExecutionLedger:
    """Execution record storage using Redis."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def create_if_absent(self, record: ExecutionRecord) -> tuple[ExecutionRecord, bool]:
        """Insert a record unless one already exists for (action, subject).

        Args:
            record: Fresh pending record

        Returns:
            Tuple of (stored record, created)
        """
        key = RedisKeys.record(record.record_id)
        created = await self.redis.set(key, record.model_dump_json(), nx=True)

        pipe = self.redis.pipeline(transaction=False)
        pipe.sadd(RedisKeys.records_by_action(record.action_id), record.record_id)
        pipe.sadd(RedisKeys.records_by_subject(record.subject_id), record.record_id)
        await pipe.execute()

        if created:
            return record, True

        existing = await self.get(record.record_id)
        if existing is None:
            raise ConflictError(f"Record {record.record_id} vanished during insert")
        return existing, False

    async def get(self, record_id: str) -> ExecutionRecord | None:
        """Get a record by ID."""
        data = await self.redis.get(RedisKeys.record(record_id))
        if not data:
            return None
        return ExecutionRecord.model_validate_json(data)

    async def get_many(self, record_ids: list[str]) -> list[ExecutionRecord]:
        """Load several records, skipping missing ones, preserving input order."""
        if not record_ids:
            return []
        values = await self.redis.mget([RedisKeys.record(r) for r in record_ids])
        return [ExecutionRecord.model_validate_json(v) for v in values if v]

    async def transition(
        self,
        record_id: str,
        target: ExecutionStatus,
        now: datetime,
        expected: set[ExecutionStatus] | frozenset[ExecutionStatus] | None = None,
        holder: tuple[str | None, datetime | None] | None = None,
        **changes: Any,
    ) -> ExecutionRecord | None:
        """Move a record to ``target`` if it is still in an expected state.

        Args:
            record_id: Record to update
            target: New status
            now: Current time, written to updated_at
            expected: Statuses the caller believes the record is in. If the
                record moved elsewhere meanwhile, nothing is written.
            holder: ``(claimed_by, claimed_at)`` the caller dispatched under. If
                the claim was released and taken again meanwhile, nothing is
                written.
            **changes: Other fields to set in the same write

        Returns:
            Updated record, or None if the record was not in an expected state

        Raises:
            NotFoundError: If the record does not exist
            InvalidTransitionError: If the state machine forbids the edge
        """

        def apply(record: ExecutionRecord) -> ExecutionRecord | None:
            if expected is not None and record.status not in expected:
                return None
            if holder is not None and (record.claimed_by, record.claimed_at) != holder:
                return None
            if not can_transition(record.status, target):
                raise InvalidTransitionError(record.record_id, record.status.value, target.value)
            record.status = target
            record.updated_at = now
            for name, value in changes.items():
                setattr(record, name, value)
            return record

        return await self._mutate(record_id, apply)

    async def claim(self, record_id: str, worker_id: str, now: datetime) -> ExecutionRecord | None:
        """Atomically claim a due record for one worker.

        ``status=scheduled AND claimed_by IS NULL`` -> ``status=claimed``. A
        concurrent writer aborts the transaction and the claim is abandoned.

        Returns:
            Claimed record, or None if another worker won or it is no longer due
        """

        def apply(record: ExecutionRecord) -> ExecutionRecord | None:
            if record.status != ExecutionStatus.SCHEDULED or record.claimed_by is not None:
                return None
            if record.scheduled_for is None or record.scheduled_for > now:
                return None
            record.status = ExecutionStatus.CLAIMED
            record.claimed_by = worker_id
            record.claimed_at = now
            record.updated_at = now
            return record

        try:
            return await self._mutate(record_id, apply, retry_on_conflict=False)
        except NotFoundError:
            return None

    async def release(
        self,
        record_id: str,
        now: datetime,
        worker_id: str | None = None,
        count_interrupted: bool = False,
    ) -> ExecutionRecord | None:
        """Return a claimed/running record to scheduled, clearing the claim.

        Args:
            record_id: Record to release
            now: Current time
            worker_id: Only release if this worker still holds the claim
            count_interrupted: Count a running record's unfinished dispatch as
                an attempt

        Returns:
            Released record, or None if it was not in flight
        """

        def apply(record: ExecutionRecord) -> ExecutionRecord | None:
            if record.status not in IN_FLIGHT_STATUSES:
                return None
            if worker_id is not None and record.claimed_by != worker_id:
                return None
            if count_interrupted and record.status == ExecutionStatus.RUNNING:
                record.attempt_count += 1
                record.last_error = INTERRUPTED_REASON
            record.status = ExecutionStatus.SCHEDULED
            record.claimed_by = None
            record.claimed_at = None
            record.updated_at = now
            return record

        return await self._mutate(record_id, apply)

    async def due_record_ids(self, now: datetime, limit: int = 500, offset: int = 0) -> list[str]:
        """Scheduled records whose scheduled_for is not after now, earliest first."""
        return await self.redis.zrangebyscore(
            RedisKeys.DUE, "-inf", now.timestamp(), start=offset, num=limit
        )

    async def stale_claim_ids(self, cutoff: datetime) -> list[str]:
        """In-flight records claimed at or before the cutoff."""
        return await self.redis.zrangebyscore(RedisKeys.CLAIMS, "-inf", cutoff.timestamp())

    async def list_for_action(self, action_id: str) -> list[ExecutionRecord]:
        """All records of a flow action, oldest first."""
        record_ids = await self.redis.smembers(RedisKeys.records_by_action(action_id))
        records = await self.get_many(sorted(record_ids))
        return sorted(records, key=lambda r: r.created_at)

    async def list_for_subject(self, subject_id: str) -> list[ExecutionRecord]:
        """All records of a subject."""
        record_ids = await self.redis.smembers(RedisKeys.records_by_subject(subject_id))
        return await self.get_many(sorted(record_ids))

    async def status_summary(self, action_id: str) -> dict[str, int]:
        """Count a flow action's records per status."""
        counts = Counter(r.status.value for r in await self.list_for_action(action_id))
        return {status.value: counts.get(status.value, 0) for status in ExecutionStatus}

    async def delete_for_action(self, action_id: str) -> int:
        """Delete every record of a hard-deleted flow action.

        Returns:
            Number of records deleted
        """
        records = await self.list_for_action(action_id)
        pipe = self.redis.pipeline(transaction=True)
        for record in records:
            pipe.delete(RedisKeys.record(record.record_id))
            pipe.zrem(RedisKeys.DUE, record.record_id)
            pipe.zrem(RedisKeys.CLAIMS, record.record_id)
            pipe.srem(RedisKeys.records_by_subject(record.subject_id), record.record_id)
        pipe.delete(RedisKeys.records_by_action(action_id))
        await pipe.execute()
        return len(records)

    async def _mutate(
        self,
        record_id: str,
        apply: Mutation,
        retry_on_conflict: bool = True,
    ) -> ExecutionRecord | None:
        """Read-modify-write a record under WATCH.

        Args:
            record_id: Record to update
            apply: Receives a copy of the current record; returns the record to
                write, or None to leave it untouched
            retry_on_conflict: Re-read and re-apply when another writer got in
                first; when False a conflict returns None

        Raises:
            NotFoundError: If the record does not exist
            ConflictError: If retries are exhausted
        """
        key = RedisKeys.record(record_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            for _ in range(MAX_CONFLICT_RETRIES):
                try:
                    await pipe.watch(key)
                    data = await pipe.get(key)
                    if not data:
                        raise NotFoundError("Execution record", record_id)

                    updated = apply(ExecutionRecord.model_validate_json(data))
                    if updated is None:
                        await pipe.unwatch()
                        return None

                    pipe.multi()
                    pipe.set(key, updated.model_dump_json())
                    self._queue_index_updates(pipe, updated)
                    await pipe.execute()
                    return updated
                except WatchError:
                    if not retry_on_conflict:
                        logger.debug("Record write lost race", record_id=record_id)
                        return None
                    await pipe.reset()
        raise ConflictError(f"Record {record_id} kept changing, gave up after {MAX_CONFLICT_RETRIES} tries")

    @staticmethod
    def _queue_index_updates(pipe: Pipeline, record: ExecutionRecord) -> None:
        if record.status == ExecutionStatus.SCHEDULED and record.scheduled_for is not None:
            pipe.zadd(RedisKeys.DUE, {record.record_id: record.scheduled_for.timestamp()})
        else:
            pipe.zrem(RedisKeys.DUE, record.record_id)

        if record.status in IN_FLIGHT_STATUSES and record.claimed_at is not None:
            pipe.zadd(RedisKeys.CLAIMS, {record.record_id: record.claimed_at.timestamp()})
        else:
            pipe.zrem(RedisKeys.CLAIMS, record.record_id)
