"""
Manual response response models.
"""

from typing import Any

from pydantic import BaseModel, Field


class SendResponseResponse(BaseModel):
    """Response for a manually sent reply."""

    success: bool = Field(..., description="Whether the reply was sent")
    message_id: str = Field(..., description="Gmail ID of the sent message")
    to: str
    subject: str
    ai_generated: bool = Field(..., description="Whether the body was drafted by the model")


class DraftResponse(BaseModel):
    """A drafted reply that was not sent."""

    query: str
    response: str
    knowledge_used: list[dict[str, Any]] = Field(
        default_factory=list, description="Knowledge matches the draft was built from"
    )
