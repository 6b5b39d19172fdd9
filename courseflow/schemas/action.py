"""Flow action API schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from courseflow.models.action import (
    ActionMetadata,
    ChannelConfig,
    ChannelType,
    RecipientRole,
    RetryPolicy,
    Scope,
    TriggerSpec,
)


class ActionCreate(BaseModel):
    """Schema for creating a new flow action."""

    organization_id: str = Field(..., min_length=1, description="Owning organization")
    scope: Scope = Field(..., description="Course or session the action belongs to")
    title: str = Field(..., min_length=1, max_length=200, description="Action title")
    channel: ChannelConfig = Field(..., description="Channel type and its configuration")
    recipient_role: RecipientRole = Field(..., description="Who receives the effect")
    trigger: TriggerSpec = Field(..., description="When the action fires")
    execution_order: int = Field(default=0, ge=0, description="Position within the scope")
    is_active: bool = Field(default=True, description="Whether the action is active")
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    created_by: str = Field(default="system", description="Operator creating the action")


class ActionUpdate(BaseModel):
    """Schema for partially updating a flow action.

    Scope and organization are fixed at creation.
    """

    title: str | None = Field(default=None, min_length=1, max_length=200)
    channel: ChannelConfig | None = None
    recipient_role: RecipientRole | None = None
    trigger: TriggerSpec | None = None
    execution_order: int | None = Field(default=None, ge=0)
    is_active: bool | None = None
    retry_policy: RetryPolicy | None = None


class ActionStatusUpdate(BaseModel):
    """Schema for activating or deactivating an action."""

    is_active: bool = Field(..., description="Whether the action is active")


class ActionResponse(BaseModel):
    """Schema for flow action response."""

    action_id: str
    organization_id: str
    scope: Scope
    title: str
    channel_type: ChannelType
    channel: ChannelConfig
    recipient_role: RecipientRole
    trigger: TriggerSpec
    execution_order: int
    sequence: int
    is_active: bool
    retry_policy: RetryPolicy
    metadata: ActionMetadata


class ActionCreateResponse(BaseModel):
    """Schema for action creation response."""

    action_id: str = Field(..., description="Created action ID")
    sequence: int = Field(..., description="Creation sequence number")
    records_planned: int = Field(default=0, description="Execution records created or resolved")
    created_at: datetime = Field(..., description="Creation timestamp")


class ActionStatusResponse(BaseModel):
    """Schema for status change response."""

    action: ActionResponse
    records_skipped: int = Field(default=0, description="Outstanding records skipped by deactivation")


class ReorderRequest(BaseModel):
    """New execution order for every action of a scope."""

    action_ids: list[str] = Field(..., min_length=1, description="Action ids in their new order")


class CopyActionsResponse(BaseModel):
    """Actions copied from a course onto a session."""

    actions: list[ActionResponse] = Field(default_factory=list)
