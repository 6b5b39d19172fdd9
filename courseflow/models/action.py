"""Flow action domain models."""

from datetime import datetime, time
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import AnyHttpUrl, BaseModel, Field, model_validator


class ScopeType(str, Enum):
    """Owner of a flow action."""

    COURSE = "course"
    SESSION = "session"


class ChannelType(str, Enum):
    """Side effect a flow action produces."""

    EMAIL = "email"
    NOTIFICATION = "notification"
    WEBHOOK = "webhook"
    DOCUMENT = "document"
    CERTIFICATE = "certificate"
    ASSIGNMENT = "assignment"
    REMINDER = "reminder"
    PAYMENT = "payment"
    ENROLLMENT = "enrollment"
    COMPLETION = "completion"
    FEEDBACK = "feedback"
    MEETING = "meeting"
    RESOURCE = "resource"


class RecipientRole(str, Enum):
    """Who receives the side effect."""

    TRAINER = "trainer"
    LEARNER = "learner"
    CLIENT_COMPANY = "client_company"
    ADMIN = "admin"


class ReferenceEvent(str, Enum):
    """Lifecycle timestamp an offset is computed from."""

    ENROLLMENT = "enrollment"
    COMPLETION = "completion"
    START = "start"
    CUSTOM = "custom"


class Direction(str, Enum):
    """Side of the reference event the action fires on."""

    BEFORE = "before"
    AFTER = "after"
    ON = "on"


class Scope(BaseModel):
    """Course or session a flow action belongs to."""

    scope_type: ScopeType = Field(..., description="Owner type")
    scope_id: str = Field(..., min_length=1, description="Course or session identifier")

    @property
    def key(self) -> str:
        return f"{self.scope_type.value}:{self.scope_id}"

    @classmethod
    def from_key(cls, key: str) -> "Scope":
        scope_type, _, scope_id = key.partition(":")
        return cls(scope_type=ScopeType(scope_type), scope_id=scope_id)


class TriggerSpec(BaseModel):
    """When a flow action fires, relative to a reference event."""

    reference_event: ReferenceEvent = Field(..., description="Reference lifecycle event")
    direction: Direction = Field(default=Direction.ON, description="before, after or on")
    day_offset: int = Field(default=0, ge=0, description="Whole calendar days from the reference date")
    time_of_day: time | None = Field(
        default=None,
        description="Local clock time; inherits the reference time when absent",
    )
    custom_key: str = Field(
        default="custom",
        min_length=1,
        description="Organization-defined date name for custom reference events",
    )

    @model_validator(mode="after")
    def validate_offset(self) -> "TriggerSpec":
        """An 'on' trigger has no offset."""
        if self.direction == Direction.ON and self.day_offset != 0:
            raise ValueError("day_offset must be 0 when direction is 'on'")
        return self

    @classmethod
    def from_legacy(
        cls,
        reference_event: ReferenceEvent | str,
        signed_days: int,
        time_of_day: time | None = None,
    ) -> "TriggerSpec":
        """Convert a signed day count from older action tables.

        Negative values meant "before", positive "after".
        """
        if signed_days < 0:
            direction = Direction.BEFORE
        elif signed_days > 0:
            direction = Direction.AFTER
        else:
            direction = Direction.ON
        return cls(
            reference_event=ReferenceEvent(reference_event),
            direction=direction,
            day_offset=abs(signed_days),
            time_of_day=time_of_day,
        )


class EmailChannel(BaseModel):
    """Templated email sent to the recipients of a role."""

    type: Literal[ChannelType.EMAIL] = ChannelType.EMAIL
    destination: str = Field(..., min_length=1, description="Email template id")
    attach_document_ids: list[str] = Field(default_factory=list, description="Library documents attached to the email")


class NotificationChannel(BaseModel):
    """Templated push/in-app notification."""

    type: Literal[ChannelType.NOTIFICATION, ChannelType.REMINDER] = ChannelType.NOTIFICATION
    destination: str = Field(..., min_length=1, description="Notification template id")


class WebhookChannel(BaseModel):
    """Signed HTTP POST to an organization endpoint."""

    type: Literal[ChannelType.WEBHOOK] = ChannelType.WEBHOOK
    destination: AnyHttpUrl = Field(..., description="Webhook URL")
    secret: str | None = Field(default=None, description="HMAC secret, defaults to the service secret")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra request headers")


class DocumentChannel(BaseModel):
    """Document or certificate generated from a template."""

    type: Literal[ChannelType.DOCUMENT, ChannelType.CERTIFICATE] = ChannelType.DOCUMENT
    destination: str = Field(..., min_length=1, description="Document template id")
    deliver: bool = Field(default=True, description="Send the artifact to the recipients once generated")


class ServiceChannel(BaseModel):
    """Call to a platform service (assignment, payment, meeting, ...)."""

    type: Literal[
        ChannelType.ASSIGNMENT,
        ChannelType.PAYMENT,
        ChannelType.ENROLLMENT,
        ChannelType.COMPLETION,
        ChannelType.FEEDBACK,
        ChannelType.MEETING,
        ChannelType.RESOURCE,
    ]
    destination: str = Field(..., min_length=1, description="Target resource in the service")
    payload: dict[str, Any] = Field(default_factory=dict, description="Static payload merged into the call")


ChannelConfig = Annotated[
    Union[EmailChannel, NotificationChannel, WebhookChannel, DocumentChannel, ServiceChannel],
    Field(discriminator="type"),
]


class RetryPolicy(BaseModel):
    """Retry bound for transient failures."""

    max_attempts: int = Field(default=3, ge=1, le=20, description="Maximum dispatch attempts")


class ActionMetadata(BaseModel):
    """Flow action metadata."""

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    created_by: str = Field(default="system")
    version: int = Field(default=1)


class FlowAction(BaseModel):
    """A definition of one automated side effect attached to a course or session."""

    action_id: str = Field(..., description="Flow action unique identifier")
    organization_id: str = Field(..., description="Owning organization")
    scope: Scope = Field(..., description="Course or session the action belongs to")
    title: str = Field(..., description="Action title")
    channel: ChannelConfig = Field(..., description="Channel type and its typed configuration")
    recipient_role: RecipientRole = Field(..., description="Who receives the effect")
    trigger: TriggerSpec = Field(..., description="When the action fires")
    execution_order: int = Field(default=0, ge=0, description="Position within the scope")
    sequence: int = Field(default=0, ge=0, description="Creation order, breaks execution_order ties")
    is_active: bool = Field(default=True, description="Inactive actions are never resolved")
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    metadata: ActionMetadata = Field(default_factory=ActionMetadata)

    @property
    def channel_type(self) -> ChannelType:
        return self.channel.type

    @property
    def destination(self) -> str:
        return str(self.channel.destination)

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.execution_order, self.sequence)
