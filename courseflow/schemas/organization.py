"""Organization and template API schemas."""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator


class OrganizationSettingsUpdate(BaseModel):
    """Schema for replacing organization settings."""

    timezone: str = Field(default="UTC", description="IANA timezone")
    paused: bool = Field(default=False, description="Hold every dispatch for the organization")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value


class TemplateUpsert(BaseModel):
    """Schema for creating or replacing a message template."""

    organization_id: str = Field(..., min_length=1)
    subject: str = Field(..., min_length=1, max_length=300, description="Email subject / notification title")
    body: str = Field(..., min_length=1, description="Body with {{variable}} placeholders")
    is_active: bool = Field(default=True)
