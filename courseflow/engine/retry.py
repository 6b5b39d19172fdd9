"""Retry manager: writes a dispatch result back to the ledger."""

from datetime import datetime, timedelta

from courseflow.channels.base import DispatchOutcome, DispatchResult
from courseflow.core.config import get_settings
from courseflow.core.logging import get_logger
from courseflow.models.action import FlowAction
from courseflow.models.execution import ExecutionRecord, ExecutionStatus
from courseflow.observability.metrics import DEAD_LETTERS, RECORDS_SKIPPED, RETRIES_SCHEDULED
from courseflow.storage.auxiliary import DeadLetterQueue
from courseflow.storage.ledger import ExecutionLedger

logger = get_logger(__name__)

RUNNING_ONLY = frozenset({ExecutionStatus.RUNNING})


def backoff_delay(attempt_count: int, base: float, cap: float) -> float:
    """Exponential backoff in seconds after ``attempt_count`` failed attempts."""
    return min(base * (2 ** max(attempt_count - 1, 0)), cap)


class RetryManager:
    """Applies completed/transient/permanent outcomes to running records."""

    def __init__(
        self,
        ledger: ExecutionLedger,
        dead_letters: DeadLetterQueue,
        base_delay: float | None = None,
        max_delay: float | None = None,
    ):
        settings = get_settings()
        self._ledger = ledger
        self._dead_letters = dead_letters
        self._base_delay = base_delay or settings.retry_base_delay_seconds
        self._max_delay = max_delay or settings.retry_max_delay_seconds

    async def apply(
        self,
        record: ExecutionRecord,
        action: FlowAction,
        result: DispatchResult,
        now: datetime,
    ) -> ExecutionRecord | None:
        """Record the outcome of one attempt.

        Args:
            record: Record as it was dispatched (running)
            action: Its flow action, for the retry policy
            result: Dispatch result
            now: Current time

        Returns:
            Updated record, or None if the record is no longer running under
            the claim it was dispatched with (its claim timed out and was
            released or taken by another worker meanwhile)
        """
        holder = (record.claimed_by, record.claimed_at)
        attempts = record.attempt_count + 1

        if result.outcome == DispatchOutcome.COMPLETED:
            return await self._ledger.transition(
                record.record_id,
                ExecutionStatus.COMPLETED,
                now,
                expected=RUNNING_ONLY,
                holder=holder,
                attempt_count=attempts,
                executed_at=now,
                last_error=None,
            )

        if result.skip:
            updated = await self._ledger.transition(
                record.record_id,
                ExecutionStatus.SKIPPED,
                now,
                expected=RUNNING_ONLY,
                holder=holder,
                attempt_count=attempts,
                last_error=result.reason,
            )
            RECORDS_SKIPPED.labels(reason="precondition").inc()
            return updated

        if (
            result.outcome == DispatchOutcome.TRANSIENT_FAILURE
            and attempts < action.retry_policy.max_attempts
        ):
            delay = backoff_delay(attempts, self._base_delay, self._max_delay)
            updated = await self._ledger.transition(
                record.record_id,
                ExecutionStatus.SCHEDULED,
                now,
                expected=RUNNING_ONLY,
                holder=holder,
                attempt_count=attempts,
                last_error=result.reason,
                scheduled_for=now + timedelta(seconds=delay),
                claimed_by=None,
                claimed_at=None,
            )
            RETRIES_SCHEDULED.labels(channel=action.channel_type.value).inc()
            logger.info(
                "Transient failure, retry scheduled",
                record_id=record.record_id,
                attempt=attempts,
                max_attempts=action.retry_policy.max_attempts,
                delay_seconds=delay,
                reason=result.reason,
            )
            return updated

        updated = await self._ledger.transition(
            record.record_id,
            ExecutionStatus.FAILED,
            now,
            expected=RUNNING_ONLY,
            holder=holder,
            attempt_count=attempts,
            last_error=result.reason,
        )
        if updated is not None:
            await self._dead_letters.push(updated)
            DEAD_LETTERS.labels(channel=action.channel_type.value).inc()
            logger.warning(
                "Execution failed",
                record_id=record.record_id,
                action_id=action.action_id,
                attempts=attempts,
                outcome=result.outcome.value,
                reason=result.reason,
            )
        return updated
