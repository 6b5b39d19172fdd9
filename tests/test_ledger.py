"""Tests for the execution ledger and its state machine."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from courseflow.core.exceptions import InvalidTransitionError, NotFoundError
from courseflow.models.action import Scope, ScopeType
from courseflow.models.execution import (
    ExecutionRecord,
    ExecutionStatus,
    can_transition,
    make_idempotency_key,
)
from courseflow.storage.auxiliary import DeadLetterQueue
from courseflow.storage.ledger import INTERRUPTED_REASON, ExecutionLedger

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
SCOPE = Scope(scope_type=ScopeType.COURSE, scope_id="course_1")


def new_record(subject_id: str = "enr_1") -> ExecutionRecord:
    return ExecutionRecord.new(
        action_id="act_1",
        subject_id=subject_id,
        organization_id="org_1",
        scope=SCOPE,
        now=NOW - timedelta(days=1),
    )


async def scheduled(ledger: ExecutionLedger, subject_id: str = "enr_1") -> ExecutionRecord:
    record, _ = await ledger.create_if_absent(new_record(subject_id))
    return await ledger.transition(record.record_id, ExecutionStatus.SCHEDULED, NOW, scheduled_for=NOW)


def test_terminal_states_have_no_outgoing_edges() -> None:
    for terminal in (
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.SKIPPED,
        ExecutionStatus.CANCELLED,
    ):
        assert terminal.is_terminal
        assert not any(can_transition(terminal, target) for target in ExecutionStatus)


def test_idempotency_key_is_deterministic_per_epoch() -> None:
    key = make_idempotency_key("act_1", "enr_1", 1000)

    assert key == make_idempotency_key("act_1", "enr_1", 1000)
    assert key != make_idempotency_key("act_1", "enr_1", 1001)
    assert len(key) == 32


@pytest.mark.asyncio
async def test_create_if_absent_is_idempotent(ledger: ExecutionLedger) -> None:
    first, created = await ledger.create_if_absent(new_record())
    await ledger.transition(first.record_id, ExecutionStatus.SCHEDULED, NOW, scheduled_for=NOW)

    again, created_again = await ledger.create_if_absent(new_record())

    assert created is True
    assert created_again is False
    assert again.status == ExecutionStatus.SCHEDULED
    assert len(await ledger.list_for_action("act_1")) == 1


@pytest.mark.asyncio
async def test_scheduled_record_is_indexed_as_due(ledger: ExecutionLedger) -> None:
    record = await scheduled(ledger)

    assert await ledger.due_record_ids(NOW) == [record.record_id]
    assert await ledger.due_record_ids(NOW - timedelta(seconds=1)) == []


@pytest.mark.asyncio
async def test_terminal_record_is_immutable(ledger: ExecutionLedger) -> None:
    record = await scheduled(ledger)
    await ledger.transition(record.record_id, ExecutionStatus.SKIPPED, NOW)

    with pytest.raises(InvalidTransitionError):
        await ledger.transition(record.record_id, ExecutionStatus.SCHEDULED, NOW, scheduled_for=NOW)

    stored = await ledger.get(record.record_id)
    assert stored.status == ExecutionStatus.SKIPPED
    assert await ledger.due_record_ids(NOW) == []


@pytest.mark.asyncio
async def test_transition_with_stale_expectation_writes_nothing(ledger: ExecutionLedger) -> None:
    record = await scheduled(ledger)

    result = await ledger.transition(
        record.record_id,
        ExecutionStatus.RUNNING,
        NOW,
        expected={ExecutionStatus.CLAIMED},
    )

    assert result is None
    assert (await ledger.get(record.record_id)).status == ExecutionStatus.SCHEDULED


@pytest.mark.asyncio
async def test_transition_of_missing_record_raises(ledger: ExecutionLedger) -> None:
    with pytest.raises(NotFoundError):
        await ledger.transition("act_x:enr_x", ExecutionStatus.SCHEDULED, NOW)


@pytest.mark.asyncio
async def test_claim_requires_due_scheduled_record(ledger: ExecutionLedger) -> None:
    pending, _ = await ledger.create_if_absent(new_record("enr_pending"))
    future = await scheduled(ledger, "enr_future")
    await ledger.transition(
        future.record_id,
        ExecutionStatus.SCHEDULED,
        NOW,
        scheduled_for=NOW + timedelta(hours=1),
    )

    assert await ledger.claim(pending.record_id, "worker-a", NOW) is None
    assert await ledger.claim(future.record_id, "worker-a", NOW) is None
    assert await ledger.claim("act_1:missing", "worker-a", NOW) is None


@pytest.mark.asyncio
async def test_concurrent_claims_have_exactly_one_winner(ledger: ExecutionLedger) -> None:
    record = await scheduled(ledger)

    results = await asyncio.gather(
        ledger.claim(record.record_id, "worker-a", NOW),
        ledger.claim(record.record_id, "worker-b", NOW),
    )

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    stored = await ledger.get(record.record_id)
    assert stored.status == ExecutionStatus.CLAIMED
    assert stored.claimed_by == winners[0].claimed_by
    assert await ledger.due_record_ids(NOW) == []
    assert await ledger.stale_claim_ids(NOW) == [record.record_id]


@pytest.mark.asyncio
async def test_release_returns_claim_to_scheduled(ledger: ExecutionLedger) -> None:
    record = await scheduled(ledger)
    await ledger.claim(record.record_id, "worker-a", NOW)

    assert await ledger.release(record.record_id, NOW, worker_id="worker-b") is None
    released = await ledger.release(record.record_id, NOW, worker_id="worker-a")

    assert released.status == ExecutionStatus.SCHEDULED
    assert released.claimed_by is None
    assert await ledger.stale_claim_ids(NOW) == []
    assert await ledger.due_record_ids(NOW) == [record.record_id]


@pytest.mark.asyncio
async def test_status_summary_counts_every_status(ledger: ExecutionLedger) -> None:
    first = await scheduled(ledger, "enr_1")
    await scheduled(ledger, "enr_2")
    await ledger.create_if_absent(new_record("enr_3"))
    await ledger.transition(first.record_id, ExecutionStatus.CANCELLED, NOW)

    summary = await ledger.status_summary("act_1")

    assert summary["scheduled"] == 1
    assert summary["pending"] == 1
    assert summary["cancelled"] == 1
    assert summary["completed"] == 0
    assert set(summary) == {s.value for s in ExecutionStatus}


@pytest.mark.asyncio
async def test_delete_for_action_cascades(ledger: ExecutionLedger) -> None:
    record = await scheduled(ledger)

    assert await ledger.delete_for_action("act_1") == 1
    assert await ledger.get(record.record_id) is None
    assert await ledger.due_record_ids(NOW) == []
    assert await ledger.list_for_subject("enr_1") == []


@pytest.mark.asyncio
async def test_release_counts_an_interrupted_run_as_an_attempt(ledger: ExecutionLedger) -> None:
    claimed_only = await scheduled(ledger, "enr_1")
    running = await scheduled(ledger, "enr_2")
    await ledger.claim(claimed_only.record_id, "worker-a", NOW)
    await ledger.claim(running.record_id, "worker-a", NOW)
    await ledger.transition(running.record_id, ExecutionStatus.RUNNING, NOW)

    never_dispatched = await ledger.release(claimed_only.record_id, NOW, count_interrupted=True)
    interrupted = await ledger.release(running.record_id, NOW, count_interrupted=True)

    assert never_dispatched.attempt_count == 0
    assert never_dispatched.last_error is None
    assert interrupted.status == ExecutionStatus.SCHEDULED
    assert interrupted.attempt_count == 1
    assert interrupted.last_error == INTERRUPTED_REASON


@pytest.mark.asyncio
async def test_transition_checks_the_claim_holder(ledger: ExecutionLedger) -> None:
    record = await scheduled(ledger)
    claimed = await ledger.claim(record.record_id, "worker-a", NOW)

    stale_holder = ("worker-b", claimed.claimed_at)
    assert await ledger.transition(
        record.record_id, ExecutionStatus.RUNNING, NOW, holder=stale_holder
    ) is None

    running = await ledger.transition(
        record.record_id, ExecutionStatus.RUNNING, NOW, holder=("worker-a", claimed.claimed_at)
    )
    assert running.status == ExecutionStatus.RUNNING


@pytest.mark.asyncio
async def test_due_record_ids_pages_with_offset(ledger: ExecutionLedger) -> None:
    records = [await scheduled(ledger, f"enr_{n}") for n in range(3)]
    expected = sorted(r.record_id for r in records)

    first = await ledger.due_record_ids(NOW, limit=2)
    rest = await ledger.due_record_ids(NOW, limit=2, offset=2)

    assert len(first) == 2
    assert len(rest) == 1
    assert sorted(first + rest) == expected


@pytest.mark.asyncio
async def test_dead_letter_queue_keeps_only_the_newest(redis) -> None:
    dead_letters = DeadLetterQueue(redis, max_length=2)
    for n in range(3):
        await dead_letters.push(new_record(f"enr_{n}"))

    assert await dead_letters.length() == 2
    assert [r.subject_id for r in await dead_letters.list()] == ["enr_2", "enr_1"]
