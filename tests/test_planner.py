"""Tests for planning execution records from actions and lifecycle changes."""

from datetime import datetime, time, timedelta, timezone

import pytest

from courseflow.core.exceptions import NotFoundError
from courseflow.engine.planner import Planner
from courseflow.models.action import Direction, ReferenceEvent, Scope, ScopeType, TriggerSpec
from courseflow.models.execution import ExecutionStatus, make_record_id
from courseflow.models.subject import OrganizationSettings

UTC = timezone.utc
NOW = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)

ON_COMPLETION = TriggerSpec(reference_event=ReferenceEvent.COMPLETION, direction=Direction.ON)
DAY_BEFORE_START = TriggerSpec(
    reference_event=ReferenceEvent.START,
    direction=Direction.BEFORE,
    day_offset=1,
    time_of_day=time(8, 0),
)


async def complete(ledger, record_id: str) -> None:
    await ledger.claim(record_id, "worker-a", NOW)
    await ledger.transition(record_id, ExecutionStatus.RUNNING, NOW)
    await ledger.transition(record_id, ExecutionStatus.COMPLETED, NOW, executed_at=NOW, attempt_count=1)


@pytest.mark.asyncio
async def test_unresolved_reference_stays_pending(planner: Planner, action_store, ledger, make_action, make_subject) -> None:
    action = await action_store.create(make_action(trigger=ON_COMPLETION))
    subject = make_subject()

    records = await planner.plan_subject(subject)

    assert [r.status for r in records] == [ExecutionStatus.PENDING]
    assert records[0].scheduled_for is None
    assert await ledger.due_record_ids(NOW + timedelta(days=365)) == []

    # A second pass over the same facts creates nothing new
    await planner.plan_subject(subject)
    assert len(await ledger.list_for_action(action.action_id)) == 1


@pytest.mark.asyncio
async def test_completion_schedules_pending_record(planner: Planner, action_store, make_action, make_subject) -> None:
    await action_store.create(make_action(trigger=ON_COMPLETION))
    await planner.plan_subject(make_subject())

    completed_at = NOW - timedelta(hours=1)
    records = await planner.plan_subject(make_subject(completion_date=completed_at))

    assert records[0].status == ExecutionStatus.SCHEDULED
    assert records[0].scheduled_for == completed_at


@pytest.mark.asyncio
async def test_moved_session_reschedules(planner: Planner, action_store, make_action, make_subject) -> None:
    await action_store.create(make_action(trigger=DAY_BEFORE_START))
    start = datetime(2025, 3, 20, 9, 0, tzinfo=UTC)

    first = await planner.plan_subject(make_subject(session_start=start))
    moved = await planner.plan_subject(make_subject(session_start=start + timedelta(days=2)))

    assert first[0].scheduled_for == datetime(2025, 3, 19, 8, 0, tzinfo=UTC)
    assert moved[0].scheduled_for == datetime(2025, 3, 21, 8, 0, tzinfo=UTC)
    assert moved[0].idempotency_key == first[0].idempotency_key


@pytest.mark.asyncio
async def test_withdrawn_date_returns_record_to_pending(planner: Planner, action_store, make_action, make_subject) -> None:
    await action_store.create(make_action(trigger=DAY_BEFORE_START))
    await planner.plan_subject(make_subject())

    records = await planner.plan_subject(make_subject(session_start=None))

    assert records[0].status == ExecutionStatus.PENDING
    assert records[0].scheduled_for is None


@pytest.mark.asyncio
async def test_organization_timezone_is_used(
    planner: Planner, action_store, organization_store, make_action, make_subject
) -> None:
    await organization_store.save(OrganizationSettings(organization_id="org_1", timezone="America/New_York"))
    await action_store.create(make_action(trigger=DAY_BEFORE_START))

    records = await planner.plan_subject(make_subject(session_start=datetime(2025, 3, 20, 14, 0, tzinfo=UTC)))

    # 08:00 EDT on the 19th
    assert records[0].scheduled_for == datetime(2025, 3, 19, 12, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_inactive_actions_are_not_planned(planner: Planner, action_store, ledger, make_action, make_subject) -> None:
    action = await action_store.create(make_action(is_active=False))

    assert await planner.plan_subject(make_subject()) == []
    assert await ledger.list_for_action(action.action_id) == []


@pytest.mark.asyncio
async def test_deactivation_skips_scheduled_and_keeps_completed(
    planner: Planner, action_store, ledger, subject_store, make_action, make_subject
) -> None:
    action = await action_store.create(make_action())
    for subject_id in ("enr_1", "enr_2", "enr_3"):
        await subject_store.save(make_subject(subject_id))
    await planner.plan_action(action)
    await complete(ledger, make_record_id(action.action_id, "enr_3"))

    _, skipped = await planner.deactivate_action(action.action_id)

    records = {r.subject_id: r for r in await ledger.list_for_action(action.action_id)}
    assert skipped == 2
    assert records["enr_1"].status == ExecutionStatus.SKIPPED
    assert records["enr_2"].status == ExecutionStatus.SKIPPED
    assert records["enr_3"].status == ExecutionStatus.COMPLETED
    assert records["enr_3"].executed_at == NOW
    assert not (await action_store.get(action.action_id)).is_active


@pytest.mark.asyncio
async def test_reactivation_plans_new_subjects_only(
    planner: Planner, action_store, ledger, subject_store, make_action, make_subject
) -> None:
    action = await action_store.create(make_action())
    await subject_store.save(make_subject("enr_1"))
    await planner.plan_action(action)
    await planner.deactivate_action(action.action_id)
    await subject_store.save(make_subject("enr_2"))

    await planner.activate_action(action.action_id)

    records = {r.subject_id: r for r in await ledger.list_for_action(action.action_id)}
    assert records["enr_1"].status == ExecutionStatus.SKIPPED
    assert records["enr_2"].status == ExecutionStatus.SCHEDULED


@pytest.mark.asyncio
async def test_cancelled_enrollment_skips_its_records(
    planner: Planner, action_store, ledger, make_action, make_subject
) -> None:
    await action_store.create(make_action())
    await action_store.create(make_action(trigger=ON_COMPLETION))
    await planner.plan_subject(make_subject())

    assert await planner.plan_subject(make_subject(is_active=False)) == []

    statuses = {r.status for r in await ledger.list_for_subject("enr_1")}
    assert statuses == {ExecutionStatus.SKIPPED}


@pytest.mark.asyncio
async def test_scope_deletion_cancels_outstanding_records(
    planner: Planner, action_store, ledger, subject_store, make_action, make_subject
) -> None:
    action = await action_store.create(make_action())
    for subject_id in ("enr_1", "enr_2"):
        await subject_store.save(make_subject(subject_id))
    await planner.plan_action(action)
    await complete(ledger, make_record_id(action.action_id, "enr_2"))

    cancelled = await planner.cancel_scope(action.scope)

    records = {r.subject_id: r for r in await ledger.list_for_action(action.action_id)}
    assert cancelled == 1
    assert records["enr_1"].status == ExecutionStatus.CANCELLED
    assert records["enr_2"].status == ExecutionStatus.COMPLETED
    assert await subject_store.list_by_scope(action.scope) == []
    assert not (await action_store.get(action.action_id)).is_active


@pytest.mark.asyncio
async def test_delete_with_history_only_deactivates(
    planner: Planner, action_store, ledger, subject_store, make_action, make_subject
) -> None:
    action = await action_store.create(make_action())
    await subject_store.save(make_subject())
    await planner.plan_action(action)

    assert await planner.delete_action(action.action_id) is False
    assert (await action_store.get(action.action_id)).is_active is False

    assert await planner.delete_action(action.action_id, force=True) is True
    assert await action_store.get(action.action_id) is None
    assert await ledger.list_for_action(action.action_id) == []


@pytest.mark.asyncio
async def test_delete_missing_action_raises(planner: Planner) -> None:
    with pytest.raises(NotFoundError):
        await planner.delete_action("act_missing")


@pytest.mark.asyncio
async def test_copy_course_actions_to_session(
    planner: Planner, action_store, ledger, subject_store, make_action, make_subject
) -> None:
    course = Scope(scope_type=ScopeType.COURSE, scope_id="course_1")
    session = Scope(scope_type=ScopeType.SESSION, scope_id="session_9")
    await action_store.create(make_action(scope=course, execution_order=2, title="Reminder"))
    await action_store.create(make_action(scope=course, execution_order=1, title="Welcome"))
    await action_store.create(make_action(scope=course, is_active=False, title="Old"))
    await subject_store.save(make_subject(scope=session))

    copies = await planner.copy_scope_actions(course, session)

    assert [a.title for a in copies] == ["Welcome", "Reminder"]
    assert all(a.scope == session for a in copies)
    assert len(await action_store.list_by_scope(course)) == 2
    for copy in copies:
        records = await ledger.list_for_action(copy.action_id)
        assert [r.status for r in records] == [ExecutionStatus.SCHEDULED]
