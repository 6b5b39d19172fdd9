"""Trigger preview and validation API schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class PreviewRequest(BaseModel):
    """Request schema for a dry-run trigger resolution.

    With ``reference`` the action's trigger is resolved against that instant
    alone; otherwise it is resolved for the listed subjects, or for every
    subject of the action's scope.
    """

    reference: datetime | None = Field(default=None, description="Reference instant to resolve against")
    subject_ids: list[str] | None = Field(default=None, description="Subjects to resolve for")


class PreviewResult(BaseModel):
    """Resolution for one subject."""

    subject_id: str | None = Field(default=None, description="Subject, None for an explicit reference")
    reference: datetime | None = Field(default=None, description="Reference instant used")
    fire_at: datetime | None = Field(default=None, description="UTC fire time, None if unresolved")
    resolved: bool = Field(..., description="Whether the reference event has happened")
    status: str | None = Field(default=None, description="Current record status, if any")


class PreviewResponse(BaseModel):
    """Response schema for trigger preview."""

    action_id: str
    timezone: str
    results: list[PreviewResult] = Field(default_factory=list)


class ValidateRequest(BaseModel):
    """Request schema for action validation."""

    action: dict[str, Any] = Field(..., description="Action definition to validate")


class ValidateResponse(BaseModel):
    """Response schema for action validation."""

    valid: bool = Field(..., description="Whether the definition is valid")
    errors: list[str] = Field(default_factory=list, description="Validation errors")
