"""Execution record domain models and the execution state machine."""

import hashlib
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from courseflow.models.action import Scope


class ExecutionStatus(str, Enum):
    """Execution record status."""

    PENDING = "pending"  # Reference event has not happened yet
    SCHEDULED = "scheduled"
    CLAIMED = "claimed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Action deactivated or subject no longer eligible
    CANCELLED = "cancelled"  # Owning course/session deleted

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.SKIPPED,
        ExecutionStatus.CANCELLED,
    }
)

# claimed/running -> scheduled covers both the retry path and stale claim recovery
ALLOWED_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset(
        {ExecutionStatus.SCHEDULED, ExecutionStatus.SKIPPED, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.SCHEDULED: frozenset(
        {
            ExecutionStatus.PENDING,
            ExecutionStatus.SCHEDULED,
            ExecutionStatus.CLAIMED,
            ExecutionStatus.SKIPPED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.CLAIMED: frozenset(
        {
            ExecutionStatus.RUNNING,
            ExecutionStatus.SCHEDULED,
            ExecutionStatus.SKIPPED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.RUNNING: frozenset(
        {
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.SCHEDULED,
            ExecutionStatus.SKIPPED,
            ExecutionStatus.CANCELLED,
        }
    ),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.SKIPPED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}

IN_FLIGHT_STATUSES = frozenset({ExecutionStatus.CLAIMED, ExecutionStatus.RUNNING})


def can_transition(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    """Check whether the state machine allows current -> target."""
    return target in ALLOWED_TRANSITIONS[current]


def make_record_id(action_id: str, subject_id: str) -> str:
    """Deterministic record id; one record per (action, subject)."""
    return f"{action_id}:{subject_id}"


def make_idempotency_key(action_id: str, subject_id: str, epoch: int) -> str:
    """Key used by channels to suppress duplicate side effects across retries."""
    raw = f"{action_id}|{subject_id}|{epoch}".encode()
    return hashlib.sha256(raw).hexdigest()[:32]


class ExecutionRecord(BaseModel):
    """One trackable execution of a flow action for one subject."""

    record_id: str = Field(..., description="'{action_id}:{subject_id}'")
    action_id: str = Field(..., description="Flow action being executed")
    subject_id: str = Field(..., description="Enrollment, session slot or session")
    organization_id: str = Field(..., description="Owning organization")
    scope: Scope = Field(..., description="Scope of the flow action")
    status: ExecutionStatus = Field(default=ExecutionStatus.PENDING)
    scheduled_for: datetime | None = Field(default=None, description="Absolute UTC fire time")
    claimed_by: str | None = Field(default=None, description="Worker holding the claim")
    claimed_at: datetime | None = Field(default=None)
    attempt_count: int = Field(default=0, ge=0)
    last_error: str | None = Field(default=None)
    executed_at: datetime | None = Field(default=None)
    epoch: int = Field(..., ge=0, description="Creation epoch of this record incarnation")
    idempotency_key: str = Field(..., description="Dedup key forwarded to channels")
    created_at: datetime = Field(...)
    updated_at: datetime = Field(...)

    @classmethod
    def new(
        cls,
        action_id: str,
        subject_id: str,
        organization_id: str,
        scope: Scope,
        now: datetime,
    ) -> "ExecutionRecord":
        """Build a fresh pending record."""
        epoch = int(now.timestamp())
        return cls(
            record_id=make_record_id(action_id, subject_id),
            action_id=action_id,
            subject_id=subject_id,
            organization_id=organization_id,
            scope=scope,
            epoch=epoch,
            idempotency_key=make_idempotency_key(action_id, subject_id, epoch),
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal
