"""Message templates used by email and notification channels."""

import re
from typing import Any

from pydantic import BaseModel, Field

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^}\s]+)\s*\}\}")


class MessageTemplate(BaseModel):
    """Email or notification template with {{variable}} placeholders."""

    template_id: str = Field(..., description="Template identifier")
    organization_id: str = Field(default="", description="Owning organization")
    subject: str = Field(..., min_length=1, description="Email subject or notification title")
    body: str = Field(..., min_length=1, description="Message body")
    is_active: bool = Field(default=True)

    def placeholders(self) -> set[str]:
        """Variable names referenced by subject and body."""
        return extract_placeholders(self.subject) | extract_placeholders(self.body)

    def render(self, variables: dict[str, Any]) -> tuple[str, str]:
        """Render (subject, body); unknown placeholders are left in place."""
        return render_text(self.subject, variables), render_text(self.body, variables)


def extract_placeholders(text: str) -> set[str]:
    return set(PLACEHOLDER_PATTERN.findall(text))


def render_text(text: str, variables: dict[str, Any]) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return str(variables[name])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(replace, text)
