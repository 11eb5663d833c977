"""
Manual response request models.
"""

from pydantic import BaseModel, Field


class SendResponseRequest(BaseModel):
    """Request for sending a reply outside the automated pipeline."""

    to: str = Field(..., min_length=3, description="Recipient email address")
    subject: str = Field(..., min_length=1, max_length=200, description="Email subject")
    message_content: str = Field(
        ..., min_length=1, description="Customer message to answer, or the reply itself when use_ai is false"
    )
    use_ai: bool = Field(default=True, description="Draft the reply from the knowledge base")
    reply_to_message_id: str | None = Field(default=None, description="Gmail message ID to thread onto")
