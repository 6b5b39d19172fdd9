"""Subject snapshots published by the event source."""

from datetime import datetime
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

from courseflow.models.action import RecipientRole, Scope


class SubjectType(str, Enum):
    """Concrete entity an execution applies to."""

    ENROLLMENT = "enrollment"
    SESSION_SLOT = "session_slot"
    SESSION = "session"


class Recipient(BaseModel):
    """A person who can receive an action's side effect."""

    email: str | None = Field(default=None, description="Email address")
    user_id: str | None = Field(default=None, description="Platform user id for push notifications")
    name: str = Field(default="", description="Display name")


class Subject(BaseModel):
    """Latest known lifecycle facts for one subject."""

    subject_id: str = Field(..., description="Subject unique identifier")
    subject_type: SubjectType = Field(default=SubjectType.ENROLLMENT)
    organization_id: str = Field(..., description="Owning organization")
    scope: Scope = Field(..., description="Course or session the subject belongs to")
    is_active: bool = Field(default=True, description="False once the enrollment is cancelled")
    enrollment_date: datetime | None = Field(default=None)
    completion_date: datetime | None = Field(default=None)
    session_start: datetime | None = Field(default=None)
    session_end: datetime | None = Field(default=None)
    custom_dates: dict[str, datetime] = Field(
        default_factory=dict,
        description="Organization-defined reference dates by name",
    )
    recipients: dict[RecipientRole, list[Recipient]] = Field(
        default_factory=dict,
        description="Recipients per role",
    )
    data: dict[str, Any] = Field(
        default_factory=dict,
        description="Template variables (learner name, course title, ...)",
    )

    def recipients_for(self, role: RecipientRole) -> list[Recipient]:
        return self.recipients.get(role, [])

    def template_variables(self) -> dict[str, Any]:
        """Variables exposed to email/notification templates."""
        variables: dict[str, Any] = {
            "subject_id": self.subject_id,
            "scope_type": self.scope.scope_type.value,
            "scope_id": self.scope.scope_id,
        }
        for name in ("enrollment_date", "completion_date", "session_start", "session_end"):
            value = getattr(self, name)
            if value is not None:
                variables[name] = value.isoformat()
        variables.update(self.data)
        return variables


class OrganizationSettings(BaseModel):
    """Per-organization engine settings."""

    organization_id: str = Field(..., description="Organization identifier")
    timezone: str = Field(default="UTC", description="IANA timezone for trigger arithmetic")
    paused: bool = Field(default=False, description="Paused organizations dispatch nothing")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value
