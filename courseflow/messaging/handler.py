"""Lifecycle event processing handler."""

import time

from courseflow.core.logging import get_logger
from courseflow.engine.planner import Planner
from courseflow.models.event import LifecycleEvent, LifecycleEventType
from courseflow.observability.metrics import EVENTS_PROCESSED
from courseflow.observability.tracing import TraceContext
from courseflow.storage.action_store import ActionStore
from courseflow.storage.auxiliary import IdempotencyStore
from courseflow.storage.ledger import ExecutionLedger
from courseflow.storage.organization_store import OrganizationStore
from courseflow.storage.redis_client import get_redis
from courseflow.storage.subject_store import SubjectStore

logger = get_logger(__name__)


class LifecycleEventHandler:
    """Applies lifecycle facts to subject snapshots and execution records."""

    def __init__(
        self,
        planner: Planner,
        subjects: SubjectStore,
        idempotency: IdempotencyStore,
    ):
        self._planner = planner
        self._subjects = subjects
        self._idempotency = idempotency

    async def handle_event(self, event: LifecycleEvent) -> None:
        """Process an incoming event.

        Pipeline steps:
        1. Idempotency check
        2. Store the subject snapshot (or cancel the deleted scope)
        3. Create/resolve the subject's execution records

        The event is marked processed only after it was applied, so a crash
        mid-way redelivers it; planning is idempotent.

        Args:
            event: Event to process
        """
        start_time = time.time()

        with TraceContext(event_id=event.event_id, event_type=event.event_type.value):
            if await self._idempotency.is_processed(event.event_id):
                EVENTS_PROCESSED.labels(event_type=event.event_type.value, status="duplicate").inc()
                logger.debug("Event already processed")
                return

            if event.event_type == LifecycleEventType.SCOPE_DELETED:
                cancelled = await self._planner.cancel_scope(event.scope)
                logger.info("Scope deletion applied", scope=event.scope.key, cancelled=cancelled)
            else:
                subject = event.subject
                if event.event_type == LifecycleEventType.ENROLLMENT_CANCELLED:
                    subject = subject.model_copy(update={"is_active": False})
                await self._subjects.save(subject)
                records = await self._planner.plan_subject(subject)
                logger.info(
                    "Subject planned",
                    subject_id=subject.subject_id,
                    scope=subject.scope.key,
                    active=subject.is_active,
                    records=len(records),
                )

            await self._idempotency.mark_processed(event.event_id)
            EVENTS_PROCESSED.labels(event_type=event.event_type.value, status="ok").inc()

            elapsed_ms = int((time.time() - start_time) * 1000)
            logger.info("Event processing complete", elapsed_ms=elapsed_ms)


# Singleton handler instance
_handler: LifecycleEventHandler | None = None


def get_event_handler() -> LifecycleEventHandler:
    """Get or create event handler singleton."""
    global _handler
    if _handler is None:
        redis = get_redis()
        subjects = SubjectStore(redis)
        planner = Planner(
            actions=ActionStore(redis),
            ledger=ExecutionLedger(redis),
            subjects=subjects,
            organizations=OrganizationStore(redis),
        )
        _handler = LifecycleEventHandler(planner, subjects, IdempotencyStore(redis))
    return _handler


async def handle_event(event: LifecycleEvent) -> None:
    """Handle an event using the singleton handler.

    This is the main entry point for event processing.

    Args:
        event: Event to process
    """
    handler = get_event_handler()
    await handler.handle_event(event)
