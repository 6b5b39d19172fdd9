"""Planner: turns catalog and lifecycle changes into ledger records.

Records are created idempotently (one per action and subject), resolved
against the subject's reference dates and kept in step with later changes:
a moved session reschedules, a withdrawn date returns the record to pending,
a cancelled enrollment or deactivated action skips, a deleted course/session
cancels.
"""

import uuid
from datetime import tzinfo

from courseflow.core.clock import Clock, SystemClock
from courseflow.core.exceptions import NotFoundError
from courseflow.core.logging import get_logger
from courseflow.engine.resolver import load_timezone, resolve_for_subject
from courseflow.models.action import ActionMetadata, FlowAction, Scope
from courseflow.models.execution import ExecutionRecord, ExecutionStatus
from courseflow.models.subject import Subject
from courseflow.observability.metrics import RECORDS_CREATED, RECORDS_SCHEDULED, RECORDS_SKIPPED
from courseflow.storage.action_store import ActionStore
from courseflow.storage.ledger import ExecutionLedger
from courseflow.storage.organization_store import OrganizationStore
from courseflow.storage.subject_store import SubjectStore

logger = get_logger(__name__)

RESOLVABLE = frozenset({ExecutionStatus.PENDING, ExecutionStatus.SCHEDULED})
# Running records are left to finish; the scheduler re-checks before running
SKIPPABLE = frozenset({ExecutionStatus.PENDING, ExecutionStatus.SCHEDULED, ExecutionStatus.CLAIMED})


class Planner:
    """Keeps execution records in step with actions and subjects."""

    def __init__(
        self,
        actions: ActionStore,
        ledger: ExecutionLedger,
        subjects: SubjectStore,
        organizations: OrganizationStore,
        clock: Clock | None = None,
    ):
        self._actions = actions
        self._ledger = ledger
        self._subjects = subjects
        self._organizations = organizations
        self._clock = clock or SystemClock()

    async def plan_subject(self, subject: Subject) -> list[ExecutionRecord]:
        """Create and resolve records for every active action of the subject's scope.

        Args:
            subject: Latest snapshot

        Returns:
            Records after planning
        """
        if not subject.is_active:
            await self.skip_subject(subject.subject_id)
            return []

        tz = await self._timezone(subject.organization_id)
        actions = await self._actions.list_by_scope(subject.scope)
        return [await self._plan(action, subject, tz) for action in actions]

    async def plan_action(self, action: FlowAction) -> list[ExecutionRecord]:
        """Create and resolve records for every eligible subject of a new or edited action."""
        if not action.is_active:
            return []

        tz = await self._timezone(action.organization_id)
        subjects = await self._subjects.list_by_scope(action.scope)
        return [await self._plan(action, s, tz) for s in subjects if s.is_active]

    async def deactivate_action(self, action_id: str) -> tuple[FlowAction, int]:
        """Deactivate an action and skip its outstanding records.

        Returns:
            Tuple of (updated action, number of records skipped)

        Raises:
            NotFoundError: If the action does not exist
        """
        action = await self._actions.set_active(action_id, False)
        if action is None:
            raise NotFoundError("Flow action", action_id)
        skipped = await self._close_records(
            await self._ledger.list_for_action(action_id),
            ExecutionStatus.SKIPPED,
            "Flow action deactivated",
        )
        RECORDS_SKIPPED.labels(reason="action_deactivated").inc(skipped)
        logger.info("Flow action deactivated", action_id=action_id, skipped=skipped)
        return action, skipped

    async def activate_action(self, action_id: str) -> FlowAction:
        """Reactivate an action and plan it for current subjects.

        Subjects whose record was already closed keep their terminal record.

        Raises:
            NotFoundError: If the action does not exist
        """
        action = await self._actions.set_active(action_id, True)
        if action is None:
            raise NotFoundError("Flow action", action_id)
        await self.plan_action(action)
        logger.info("Flow action activated", action_id=action_id)
        return action

    async def delete_action(self, action_id: str, force: bool = False) -> bool:
        """Delete an action.

        Actions with execution history are only deactivated unless ``force``
        is set, in which case the history is deleted with them.

        Returns:
            True if hard-deleted, False if deactivated instead

        Raises:
            NotFoundError: If the action does not exist
        """
        action = await self._actions.get(action_id)
        if action is None:
            raise NotFoundError("Flow action", action_id)

        records = await self._ledger.list_for_action(action_id)
        if records and not force:
            await self.deactivate_action(action_id)
            return False

        deleted = await self._ledger.delete_for_action(action_id)
        await self._actions.delete(action_id)
        logger.info("Flow action deleted", action_id=action_id, records_deleted=deleted)
        return True

    async def skip_subject(self, subject_id: str) -> int:
        """Skip outstanding records of a subject that is no longer eligible."""
        skipped = await self._close_records(
            await self._ledger.list_for_subject(subject_id),
            ExecutionStatus.SKIPPED,
            "Subject no longer eligible",
        )
        RECORDS_SKIPPED.labels(reason="subject_ineligible").inc(skipped)
        if skipped:
            logger.info("Subject records skipped", subject_id=subject_id, skipped=skipped)
        return skipped

    async def cancel_scope(self, scope: Scope) -> int:
        """Cancel every outstanding record of a deleted course or session.

        The scope's actions are deactivated so nothing is planned for it again.

        Returns:
            Number of records cancelled
        """
        cancelled = 0
        for action in await self._actions.list_by_scope(scope, include_inactive=True):
            if action.is_active:
                await self._actions.set_active(action.action_id, False)
            cancelled += await self._close_records(
                await self._ledger.list_for_action(action.action_id),
                ExecutionStatus.CANCELLED,
                f"{scope.scope_type.value.capitalize()} deleted",
            )
        await self._subjects.remove_scope(scope)
        RECORDS_SKIPPED.labels(reason="scope_deleted").inc(cancelled)
        logger.info("Scope cancelled", scope=scope.key, cancelled=cancelled)
        return cancelled

    async def copy_scope_actions(
        self,
        source: Scope,
        target: Scope,
        created_by: str = "system",
    ) -> list[FlowAction]:
        """Copy a course's active actions onto one of its sessions.

        The copies keep their order and configuration and are planned for the
        session's current subjects.

        Returns:
            Created actions
        """
        created = []
        for original in await self._actions.list_by_scope(source):
            copy = original.model_copy(
                deep=True,
                update={
                    "action_id": new_action_id(),
                    "scope": target,
                    "metadata": ActionMetadata(created_by=created_by),
                },
            )
            created.append(await self._actions.create(copy))

        for action in created:
            await self.plan_action(action)
        logger.info("Scope actions copied", source=source.key, target=target.key, count=len(created))
        return created

    async def _plan(self, action: FlowAction, subject: Subject, tz: tzinfo) -> ExecutionRecord:
        now = self._clock.now()
        record, created = await self._ledger.create_if_absent(
            ExecutionRecord.new(
                action_id=action.action_id,
                subject_id=subject.subject_id,
                organization_id=action.organization_id,
                scope=action.scope,
                now=now,
            )
        )
        if created:
            RECORDS_CREATED.labels(channel=action.channel_type.value).inc()

        if record.status not in RESOLVABLE:
            return record
        # A pending retry owns its scheduled_for until it runs again
        if record.status == ExecutionStatus.SCHEDULED and record.attempt_count > 0:
            return record

        fire_at = resolve_for_subject(subject, action.trigger, tz)

        if fire_at is None:
            if record.status == ExecutionStatus.SCHEDULED:
                updated = await self._ledger.transition(
                    record.record_id,
                    ExecutionStatus.PENDING,
                    now,
                    expected=RESOLVABLE,
                    scheduled_for=None,
                )
                return updated or record
            return record

        if record.status == ExecutionStatus.SCHEDULED and record.scheduled_for == fire_at:
            return record

        updated = await self._ledger.transition(
            record.record_id,
            ExecutionStatus.SCHEDULED,
            now,
            expected=RESOLVABLE,
            scheduled_for=fire_at,
        )
        if updated is None:
            return await self._ledger.get(record.record_id) or record

        RECORDS_SCHEDULED.labels(channel=action.channel_type.value).inc()
        logger.debug(
            "Execution scheduled",
            record_id=record.record_id,
            scheduled_for=fire_at.isoformat(),
        )
        return updated

    async def _close_records(
        self,
        records: list[ExecutionRecord],
        target: ExecutionStatus,
        reason: str,
    ) -> int:
        now = self._clock.now()
        closed = 0
        for record in records:
            if record.status not in SKIPPABLE:
                continue
            updated = await self._ledger.transition(
                record.record_id,
                target,
                now,
                expected=SKIPPABLE,
                last_error=reason,
                claimed_by=None,
            )
            if updated is not None:
                closed += 1
        return closed

    async def _timezone(self, organization_id: str) -> tzinfo:
        settings = await self._organizations.get(organization_id)
        return load_timezone(settings.timezone)


def new_action_id() -> str:
    return f"act_{uuid.uuid4().hex[:12]}"
