"""Claim-and-dispatch scheduler.

Each worker process runs one scheduler. A tick:

1. releases claims older than the claim timeout back to scheduled, counting
   an interrupted dispatch as an attempt
2. pages through scheduled records due at ``now`` until a batch of runnable
   ones is found (paused organizations and busy subjects are passed over)
3. groups them by subject, ordered by (scope, subject, execution_order,
   sequence, scheduled_for)
4. runs the groups on a bounded pool; inside a group records are claimed and
   dispatched one after another so a subject's actions keep their order

All coordination with other workers goes through the ledger's atomic claim.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from itertools import groupby

from courseflow.channels.base import DispatchOutcome, DispatchResult
from courseflow.core.clock import Clock, SystemClock
from courseflow.core.config import get_settings
from courseflow.core.logging import get_logger
from courseflow.engine.dispatcher import ActionDispatcher
from courseflow.engine.retry import RetryManager
from courseflow.models.action import FlowAction
from courseflow.models.execution import IN_FLIGHT_STATUSES, ExecutionRecord, ExecutionStatus
from courseflow.models.subject import Subject
from courseflow.observability.metrics import (
    CLAIMS,
    DUE_BACKLOG,
    RECORDS_SKIPPED,
    SCHEDULER_TICKS,
    STALE_CLAIMS_RELEASED,
)
from courseflow.observability.tracing import TraceContext
from courseflow.storage.action_store import ActionStore
from courseflow.storage.ledger import INTERRUPTED_REASON, ExecutionLedger
from courseflow.storage.organization_store import OrganizationStore
from courseflow.storage.subject_store import SubjectStore

logger = get_logger(__name__)

CLAIMED_ONLY = frozenset({ExecutionStatus.CLAIMED})
# Sorts records of deleted actions last within their subject
MISSING_ACTION_KEY = (2**31, 2**31)


@dataclass
class TickReport:
    """What one scheduler tick did."""

    released: int = 0
    due: int = 0
    held: int = 0
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    lost: int = 0


class Scheduler:
    """Polls the ledger for due records and dispatches them."""

    def __init__(
        self,
        ledger: ExecutionLedger,
        actions: ActionStore,
        subjects: SubjectStore,
        organizations: OrganizationStore,
        dispatcher: ActionDispatcher,
        retry: RetryManager,
        clock: Clock | None = None,
        worker_id: str | None = None,
        pool_size: int | None = None,
        claim_timeout: float | None = None,
        batch_size: int | None = None,
        interval: float | None = None,
    ):
        settings = get_settings()
        self._ledger = ledger
        self._actions = actions
        self._subjects = subjects
        self._organizations = organizations
        self._dispatcher = dispatcher
        self._retry = retry
        self._clock = clock or SystemClock()
        self._worker_id = worker_id or settings.worker_id
        self._pool_size = pool_size or settings.dispatch_pool_size
        self._claim_timeout = timedelta(seconds=claim_timeout or settings.claim_timeout_seconds)
        self._batch_size = batch_size or settings.scheduler_batch_size
        self._interval = interval or settings.scheduler_interval_seconds
        self._should_stop = False
        self._wakeup = asyncio.Event()

    @property
    def worker_id(self) -> str:
        return self._worker_id

    async def run(self) -> None:
        """Tick on a fixed interval until stopped."""
        logger.info(
            "Scheduler started",
            worker_id=self._worker_id,
            interval_seconds=self._interval,
            pool_size=self._pool_size,
        )

        while not self._should_stop:
            try:
                await self.tick()
            except Exception as e:
                logger.error("Scheduler tick error", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()

        logger.info("Scheduler stopped", worker_id=self._worker_id)

    def stop(self) -> None:
        """Signal the loop to stop after the current tick."""
        self._should_stop = True
        self._wakeup.set()

    async def tick(self, now: datetime | None = None) -> TickReport:
        """Run one poll-claim-dispatch pass.

        Args:
            now: Tick time, defaults to the clock

        Returns:
            Counters for the pass
        """
        now = now or self._clock.now()
        report = TickReport()
        SCHEDULER_TICKS.inc()

        report.released, report.failed = await self.release_stale_claims(now)

        records, report.held = await self._collect_due(now)
        report.due = len(records)
        DUE_BACKLOG.set(len(records))
        if not records:
            return report

        actions = await self._actions.get_many(sorted({r.action_id for r in records}))
        subjects = await self._load_subjects({r.subject_id for r in records})

        def order(record: ExecutionRecord) -> tuple:
            action = actions.get(record.action_id)
            sort_key = action.sort_key if action else MISSING_ACTION_KEY
            return (record.scope.key, record.subject_id, *sort_key, record.scheduled_for)

        records.sort(key=order)
        groups = [list(g) for _, g in groupby(records, key=lambda r: r.subject_id)]

        pool = asyncio.Semaphore(self._pool_size)

        async def run_group(group: list[ExecutionRecord]) -> None:
            async with pool:
                await self._process_group(group, actions, subjects, now, report)

        await asyncio.gather(*(run_group(g) for g in groups))

        logger.info(
            "Scheduler tick complete",
            worker_id=self._worker_id,
            due=report.due,
            held=report.held,
            claimed=report.claimed,
            completed=report.completed,
            retried=report.retried,
            failed=report.failed,
            skipped=report.skipped,
            lost=report.lost,
            released=report.released,
        )
        return report

    async def release_stale_claims(self, now: datetime) -> tuple[int, int]:
        """Return claims older than the claim timeout to scheduled.

        A record that was already running when its claim expired has used an
        attempt. If that was its last one, it fails instead of being released.

        Returns:
            Tuple of (records released, records failed)
        """
        released = failed = 0
        for record_id in await self._ledger.stale_claim_ids(now - self._claim_timeout):
            record = await self._ledger.get(record_id)
            if record is None:
                continue

            if record.status == ExecutionStatus.RUNNING:
                action = await self._actions.get(record.action_id)
                if action is not None and record.attempt_count + 1 >= action.retry_policy.max_attempts:
                    updated = await self._retry.apply(
                        record, action, DispatchResult.transient(INTERRUPTED_REASON), now
                    )
                    if updated is not None:
                        failed += 1
                    continue

            if await self._ledger.release(record_id, now, count_interrupted=True) is not None:
                released += 1
                logger.warning("Stale claim released", record_id=record_id, status=record.status.value)
        if released:
            STALE_CLAIMS_RELEASED.inc(released)
        return released, failed

    async def _process_group(
        self,
        group: list[ExecutionRecord],
        actions: dict[str, FlowAction],
        subjects: dict[str, Subject],
        now: datetime,
        report: TickReport,
    ) -> None:
        for record in group:
            try:
                proceed = await self._process_record(
                    record,
                    actions.get(record.action_id),
                    subjects.get(record.subject_id),
                    now,
                    report,
                )
            except Exception as e:
                # The claim, if any, is released by the claim timeout
                logger.error(
                    "Record processing error",
                    record_id=record.record_id,
                    error=str(e),
                    exc_info=True,
                )
                return
            if not proceed:
                return

    async def _process_record(
        self,
        record: ExecutionRecord,
        action: FlowAction | None,
        subject: Subject | None,
        now: datetime,
        report: TickReport,
    ) -> bool:
        """Claim, dispatch and settle one record.

        Returns:
            Whether the subject's later records may run in this tick
        """
        claimed = await self._ledger.claim(record.record_id, self._worker_id, now)
        if claimed is None:
            CLAIMS.labels(result="lost").inc()
            report.lost += 1
            return False
        CLAIMS.labels(result="won").inc()
        report.claimed += 1

        with TraceContext(record_id=record.record_id, action_id=record.action_id):
            reason = self._ineligible_reason(action, subject)
            if reason:
                await self._ledger.transition(
                    record.record_id,
                    ExecutionStatus.SKIPPED,
                    now,
                    expected=CLAIMED_ONLY,
                    last_error=reason,
                )
                RECORDS_SKIPPED.labels(reason="ineligible_at_dispatch").inc()
                report.skipped += 1
                logger.info("Execution skipped", reason=reason)
                return True

            running = await self._ledger.transition(
                record.record_id,
                ExecutionStatus.RUNNING,
                now,
                expected=CLAIMED_ONLY,
            )
            if running is None:
                report.lost += 1
                return False

            result = await self._dispatcher.dispatch(running, action, subject)
            updated = await self._retry.apply(running, action, result, self._clock.now())

            if updated is None:
                report.lost += 1
                return False
            if updated.status == ExecutionStatus.COMPLETED:
                report.completed += 1
            elif updated.status == ExecutionStatus.SCHEDULED:
                report.retried += 1
            elif updated.status == ExecutionStatus.SKIPPED:
                report.skipped += 1
            else:
                report.failed += 1

            return result.outcome != DispatchOutcome.TRANSIENT_FAILURE

    @staticmethod
    def _ineligible_reason(action: FlowAction | None, subject: Subject | None) -> str | None:
        if action is None:
            return "Flow action no longer exists"
        if not action.is_active:
            return "Flow action deactivated"
        if subject is None:
            return "Subject no longer exists"
        if not subject.is_active:
            return "Subject no longer eligible"
        return None

    async def _collect_due(self, now: datetime) -> tuple[list[ExecutionRecord], int]:
        """Page through the due index until a batch of runnable records is found.

        Records of paused organizations and of subjects with a record in
        flight on any worker are passed over, so however many of them sit at
        the head of the index they cannot crowd out other organizations. Each
        runnable subject comes with all of its due records; a batch cut by the
        limit could otherwise run a subject's later actions before its
        earlier ones.

        Returns:
            Tuple of (runnable records, records held for paused organizations)
        """
        paused: dict[str, bool] = {}
        groups: dict[str, list[ExecutionRecord] | None] = {}
        due: dict[str, ExecutionRecord] = {}
        held = 0
        offset = 0

        while len(due) < self._batch_size:
            record_ids = await self._ledger.due_record_ids(now, limit=self._batch_size, offset=offset)
            offset += len(record_ids)

            for record in await self._ledger.get_many(record_ids):
                if record.organization_id not in paused:
                    settings = await self._organizations.get(record.organization_id)
                    paused[record.organization_id] = settings.paused
                if paused[record.organization_id]:
                    held += 1
                    continue

                if record.subject_id not in groups:
                    groups[record.subject_id] = await self._subject_group(record.subject_id, now)
                for member in groups[record.subject_id] or []:
                    due[member.record_id] = member

            if len(record_ids) < self._batch_size:
                break
        return list(due.values()), held

    async def _subject_group(self, subject_id: str, now: datetime) -> list[ExecutionRecord] | None:
        """Every due record of a subject, or None while one is in flight."""
        records = await self._ledger.list_for_subject(subject_id)
        if any(r.status in IN_FLIGHT_STATUSES for r in records):
            logger.debug("Subject busy on another worker", subject_id=subject_id)
            return None
        return [
            r
            for r in records
            if r.status == ExecutionStatus.SCHEDULED and r.scheduled_for is not None and r.scheduled_for <= now
        ]

    async def _load_subjects(self, subject_ids: set[str]) -> dict[str, Subject]:
        subjects = {}
        for subject_id in subject_ids:
            subject = await self._subjects.get(subject_id)
            if subject is not None:
                subjects[subject_id] = subject
        return subjects
