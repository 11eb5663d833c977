"""
Gmail push notification response models.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    """Result of handling one push notification."""

    status: Literal["processed", "ignored"] = Field(..., description="What the webhook did")
    email_address: str = Field(..., description="Mailbox the notification was for")
    reason: str | None = Field(default=None, description="Why the notification was ignored")
    summary: dict[str, Any] | None = Field(
        default=None, description="Intake pass summary (candidates and per-message results)"
    )
