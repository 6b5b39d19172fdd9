"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable

import fakeredis
import pytest
import pytest_asyncio

from courseflow.core.clock import FrozenClock
from courseflow.engine.planner import Planner
from courseflow.models.action import (
    Direction,
    FlowAction,
    RecipientRole,
    ReferenceEvent,
    Scope,
    ScopeType,
    TriggerSpec,
    WebhookChannel,
)
from courseflow.models.subject import Recipient, Subject
from courseflow.storage.action_store import ActionStore
from courseflow.storage.auxiliary import DeadLetterQueue, DeliveryLog
from courseflow.storage.ledger import ExecutionLedger
from courseflow.storage.organization_store import OrganizationStore
from courseflow.storage.subject_store import SubjectStore
from courseflow.storage.template_store import TemplateStore

NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
SESSION = Scope(scope_type=ScopeType.SESSION, scope_id="session_1")


@pytest_asyncio.fixture
async def redis() -> AsyncIterator[fakeredis.FakeAsyncRedis]:
    """In-memory Redis with its own server per test."""
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def action_store(redis) -> ActionStore:
    return ActionStore(redis)


@pytest.fixture
def ledger(redis) -> ExecutionLedger:
    return ExecutionLedger(redis)


@pytest.fixture
def subject_store(redis) -> SubjectStore:
    return SubjectStore(redis)


@pytest.fixture
def organization_store(redis) -> OrganizationStore:
    return OrganizationStore(redis)


@pytest.fixture
def template_store(redis) -> TemplateStore:
    return TemplateStore(redis)


@pytest.fixture
def delivery_log(redis) -> DeliveryLog:
    return DeliveryLog(redis)


@pytest.fixture
def dead_letters(redis) -> DeadLetterQueue:
    return DeadLetterQueue(redis)


@pytest.fixture
def planner(action_store, ledger, subject_store, organization_store, clock) -> Planner:
    return Planner(action_store, ledger, subject_store, organization_store, clock)


@pytest.fixture
def make_action() -> Callable[..., FlowAction]:
    """Factory for webhook actions on the test session, firing on enrollment."""
    counter = iter(range(1, 1000))

    def factory(**overrides) -> FlowAction:
        number = next(counter)
        values = {
            "action_id": f"act_{number:03d}",
            "organization_id": "org_1",
            "scope": SESSION,
            "title": f"Action {number}",
            "channel": WebhookChannel(destination="https://hooks.example.com/flow"),
            "recipient_role": RecipientRole.LEARNER,
            "trigger": TriggerSpec(reference_event=ReferenceEvent.ENROLLMENT, direction=Direction.ON),
        }
        values.update(overrides)
        return FlowAction(**values)

    return factory


@pytest.fixture
def make_subject() -> Callable[..., Subject]:
    """Factory for enrollments in the test session, enrolled two days before NOW."""

    def factory(subject_id: str = "enr_1", **overrides) -> Subject:
        values = {
            "subject_id": subject_id,
            "organization_id": "org_1",
            "scope": SESSION,
            "enrollment_date": NOW - timedelta(days=2),
            "session_start": NOW + timedelta(days=7),
            "recipients": {
                RecipientRole.LEARNER: [
                    Recipient(email=f"{subject_id}@example.com", user_id=f"user_{subject_id}", name="Ada"),
                ],
                RecipientRole.TRAINER: [Recipient(email="trainer@example.com", name="Trainer")],
            },
            "data": {"learner_name": "Ada", "course_title": "Onboarding"},
        }
        values.update(overrides)
        return Subject(**values)

    return factory


@pytest.fixture
def sample_event_data() -> dict:
    """Sample lifecycle message body as published by the catalog."""
    return {
        "event_id": "evt_test_001",
        "event_type": "enrollment.created",
        "timestamp": "2025-03-08T09:00:00Z",
        "subject": {
            "subject_id": "enr_1",
            "subject_type": "enrollment",
            "organization_id": "org_1",
            "scope": {"scope_type": "session", "scope_id": "session_1"},
            "enrollment_date": "2025-03-08T09:00:00Z",
            "recipients": {"learner": [{"email": "ada@example.com", "name": "Ada"}]},
        },
    }

