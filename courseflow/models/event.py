"""Lifecycle event models received from the event source."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from courseflow.models.action import Scope
from courseflow.models.subject import Subject


class LifecycleEventType(str, Enum):
    """Lifecycle facts the engine reacts to."""

    SUBJECT_UPSERTED = "subject.upserted"
    ENROLLMENT_CREATED = "enrollment.created"
    ENROLLMENT_COMPLETED = "enrollment.completed"
    ENROLLMENT_CANCELLED = "enrollment.cancelled"
    SESSION_SCHEDULED = "session.scheduled"
    SESSION_UPDATED = "session.updated"
    CUSTOM_DATE_SET = "custom_date.set"
    SCOPE_DELETED = "scope.deleted"


class LifecycleEvent(BaseModel):
    """Event model received from the message queue."""

    event_id: str = Field(..., description="Event unique identifier for idempotency")
    event_type: LifecycleEventType = Field(..., description="Lifecycle event type")
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the fact was published",
    )
    subject: Subject | None = Field(
        default=None,
        description="Full subject snapshot after the fact",
    )
    scope: Scope | None = Field(
        default=None,
        description="Deleted course/session for scope events",
    )

    @model_validator(mode="after")
    def validate_payload(self) -> "LifecycleEvent":
        """Scope events carry a scope, every other event a subject."""
        if self.event_type == LifecycleEventType.SCOPE_DELETED:
            if self.scope is None:
                raise ValueError("scope is required for scope.deleted events")
        elif self.subject is None:
            raise ValueError(f"subject is required for {self.event_type.value} events")
        return self

    @classmethod
    def from_message(cls, body: dict[str, Any], fallback_id: str = "") -> "LifecycleEvent":
        """Create an event from a decoded queue message.

        Scope events may carry the scope flat (``scope_type``/``scope_id``).
        """
        payload = dict(body)
        payload.setdefault("event_id", fallback_id)
        if "scope" not in payload and "scope_type" in payload:
            payload["scope"] = {
                "scope_type": payload.pop("scope_type"),
                "scope_id": payload.pop("scope_id", ""),
            }
        return cls.model_validate(payload)
