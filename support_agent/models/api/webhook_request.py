"""
Gmail push notification request models.
Pub/Sub delivers a JSON envelope whose message.data is base64-encoded JSON
of the form {"emailAddress": ..., "historyId": ...}.
"""

import base64
import binascii
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from support_agent.pipeline.errors import ValidationError


class PubSubMessage(BaseModel):
    """The message part of a Pub/Sub push delivery."""

    model_config = ConfigDict(populate_by_name=True)

    data: str = Field(..., min_length=1, description="Base64-encoded notification payload")
    message_id: str | None = Field(default=None, alias="messageId")
    publish_time: str | None = Field(default=None, alias="publishTime")
    attributes: dict[str, str] = Field(default_factory=dict)


class PubSubPushEnvelope(BaseModel):
    """Request body of a Pub/Sub push subscription."""

    message: PubSubMessage
    subscription: str | None = None


class GmailNotification(BaseModel):
    """Decoded Gmail watch notification."""

    model_config = ConfigDict(populate_by_name=True)

    email_address: str = Field(..., min_length=3, alias="emailAddress")
    history_id: int | str | None = Field(default=None, alias="historyId")


def decode_notification(body: Any) -> GmailNotification:
    """
    Validate a push envelope and decode its notification.

    Raises:
        ValidationError: If the envelope or its payload is malformed
    """
    try:
        envelope = PubSubPushEnvelope.model_validate(body)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid push envelope: {e.error_count()} error(s)") from e

    try:
        decoded = base64.b64decode(envelope.message.data, validate=True)
        payload = json.loads(decoded)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Undecodable notification data: {e}") from e

    try:
        return GmailNotification.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError("Notification payload lacks emailAddress") from e
