"""
Gmail push webhook.
Pub/Sub calls this endpoint when the watched mailbox changes; each call
runs one intake pass over the unread candidates.
"""

import json
import secrets

from fastapi import APIRouter, HTTPException, Query, Request, status

from support_agent.infrastructure.observability.logging import get_logger
from support_agent.models.api.webhook_request import decode_notification
from support_agent.models.api.webhook_response import WebhookResponse
from support_agent.pipeline.errors import ValidationError
from support_agent.services.container import SupportServices

logger = get_logger(__name__)

router = APIRouter(prefix="/gmail", tags=["gmail"])


def get_services(request: Request) -> SupportServices:
    return request.app.state.services


@router.post("/webhook", response_model=WebhookResponse)
async def gmail_webhook(
    request: Request,
    token: str | None = Query(default=None, description="Shared push subscription token"),
):
    """Handle one Gmail push notification."""
    services = get_services(request)
    expected = services.settings.WEBHOOK_TOKEN
    if expected and not secrets.compare_digest(token or "", expected):
        logger.warning("Webhook token mismatch")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid webhook token")

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not valid JSON")

    try:
        notification = decode_notification(body)
    except ValidationError as e:
        logger.warning("Rejected malformed push notification", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    address = notification.email_address.strip().lower()
    if address not in services.settings.monitored_addresses():
        logger.info("Ignoring notification for unmonitored address", email_address=address)
        return WebhookResponse(status="ignored", email_address=address, reason="unmonitored address")

    logger.info("Push notification received", email_address=address, history_id=notification.history_id)

    try:
        summary = await services.intake.process_pending()
    except Exception as e:
        logger.error("Intake pass failed", error=str(e), error_type=type(e).__name__, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process mailbox",
        )

    return WebhookResponse(status="processed", email_address=address, summary=summary.to_dict())
