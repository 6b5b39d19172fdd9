"""Tests for lifecycle event handling and message decoding."""

import json
import pytest

from courseflow.messaging.consumer import RabbitMQConsumer
from courseflow.messaging.handler import LifecycleEventHandler
from courseflow.models.event import LifecycleEvent, LifecycleEventType
from courseflow.models.execution import ExecutionStatus, make_record_id
from courseflow.storage.auxiliary import IdempotencyStore


@pytest.fixture
def handler(planner, subject_store, redis) -> LifecycleEventHandler:
    return LifecycleEventHandler(planner, subject_store, IdempotencyStore(redis))


class FakeMessage:
    """Just enough of an aio-pika incoming message."""

    def __init__(self, body: bytes, message_id: str = "msg_1", redelivered: bool = False):
        self.body = body
        self.message_id = message_id
        self.redelivered = redelivered
        self.acked = False
        self.requeued: bool | None = None

    async def ack(self) -> None:
        self.acked = True

    async def reject(self, requeue: bool = False) -> None:
        self.requeued = requeue


@pytest.mark.asyncio
async def test_enrollment_created_schedules_records(
    handler, action_store, ledger, subject_store, make_action, sample_event_data
) -> None:
    action = await action_store.create(make_action())

    await handler.handle_event(LifecycleEvent.from_message(sample_event_data))

    record = await ledger.get(make_record_id(action.action_id, "enr_1"))
    assert record.status == ExecutionStatus.SCHEDULED
    assert record.scheduled_for.isoformat() == "2025-03-08T09:00:00+00:00"
    assert (await subject_store.get("enr_1")).recipients


@pytest.mark.asyncio
async def test_duplicate_event_is_ignored(handler, action_store, ledger, make_action, sample_event_data) -> None:
    action = await action_store.create(make_action())
    await handler.handle_event(LifecycleEvent.from_message(sample_event_data))

    # Same event id, different content: the redelivery is not applied
    redelivered = json.loads(json.dumps(sample_event_data))
    redelivered["subject"]["enrollment_date"] = "2025-03-09T09:00:00Z"
    await handler.handle_event(LifecycleEvent.from_message(redelivered))

    record = await ledger.get(make_record_id(action.action_id, "enr_1"))
    assert record.scheduled_for.isoformat() == "2025-03-08T09:00:00+00:00"


@pytest.mark.asyncio
async def test_cancelled_enrollment_skips_records(
    handler, action_store, ledger, subject_store, make_action, sample_event_data
) -> None:
    action = await action_store.create(make_action())
    await handler.handle_event(LifecycleEvent.from_message(sample_event_data))

    cancelled = dict(sample_event_data, event_id="evt_test_002", event_type="enrollment.cancelled")
    await handler.handle_event(LifecycleEvent.from_message(cancelled))

    record = await ledger.get(make_record_id(action.action_id, "enr_1"))
    assert record.status == ExecutionStatus.SKIPPED
    assert record.last_error == "Subject no longer eligible"
    assert (await subject_store.get("enr_1")).is_active is False


@pytest.mark.asyncio
async def test_flat_scope_deleted_event_cancels_records(
    handler, action_store, ledger, make_action, sample_event_data
) -> None:
    action = await action_store.create(make_action())
    await handler.handle_event(LifecycleEvent.from_message(sample_event_data))

    event = LifecycleEvent.from_message(
        {"event_type": "scope.deleted", "scope_type": "session", "scope_id": "session_1"},
        fallback_id="msg_delete",
    )
    await handler.handle_event(event)

    assert event.event_id == "msg_delete"
    record = await ledger.get(make_record_id(action.action_id, "enr_1"))
    assert record.status == ExecutionStatus.CANCELLED
    assert record.last_error == "Session deleted"


def test_scope_event_requires_scope() -> None:
    with pytest.raises(ValueError):
        LifecycleEvent(event_id="evt_1", event_type=LifecycleEventType.SCOPE_DELETED)


def test_subject_event_requires_subject() -> None:
    with pytest.raises(ValueError):
        LifecycleEvent(event_id="evt_1", event_type=LifecycleEventType.ENROLLMENT_CREATED)


@pytest.mark.asyncio
async def test_consumer_passes_valid_events_to_handler(sample_event_data) -> None:
    received: list[LifecycleEvent] = []

    async def collect(event: LifecycleEvent) -> None:
        received.append(event)

    consumer = RabbitMQConsumer(collect)
    message = FakeMessage(json.dumps(sample_event_data).encode())

    await consumer._process_message(message)

    assert message.acked
    assert [e.event_id for e in received] == ["evt_test_001"]
    assert received[0].subject.scope.key == "session:session_1"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        b"not json",
        b'{"event_id": "evt_1"}',
        b'{"event_type": "enrollment.created", "event_id": "evt_1"}',
        b'{"event_type": "unknown.type", "event_id": "evt_1"}',
    ],
)
async def test_consumer_drops_malformed_messages(body) -> None:
    received = []

    async def collect(event: LifecycleEvent) -> None:
        received.append(event)

    message = FakeMessage(body)
    await RabbitMQConsumer(collect)._process_message(message)

    assert received == []
    assert message.acked


@pytest.mark.asyncio
@pytest.mark.parametrize("redelivered, requeue", [(False, True), (True, False)])
async def test_consumer_requeues_failed_messages_once(sample_event_data, redelivered, requeue) -> None:
    async def broken(event: LifecycleEvent) -> None:
        raise RuntimeError("boom")

    message = FakeMessage(json.dumps(sample_event_data).encode(), redelivered=redelivered)

    await RabbitMQConsumer(broken)._process_message(message)

    assert not message.acked
    assert message.requeued is requeue
