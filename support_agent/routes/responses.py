"""
Manual response endpoints.
Send a knowledge-based reply to an arbitrary address, or preview a draft
without sending. Both require the RESPONSES_API_TOKEN bearer token.
"""

import secrets
from dataclasses import asdict

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from support_agent.infrastructure.observability.logging import get_logger
from support_agent.models.api.response_request import SendResponseRequest
from support_agent.models.api.response_response import DraftResponse, SendResponseResponse
from support_agent.models.domain.support_domain import (
    ActionType,
    ClassificationResult,
    InboundMessage,
)
from support_agent.services.container import SupportServices
from support_agent.services.gmail_service import GmailApiError

logger = get_logger(__name__)

router = APIRouter(prefix="/responses", tags=["responses"])

DRAFT_SENDER = "customer@example.com"
MANUAL_CLASSIFICATION = ClassificationResult(
    action_type=ActionType.HELP_RESPONSE.value,
    confidence=0.8,
    reasoning="Manual response request",
)


def get_services(request: Request) -> SupportServices:
    return request.app.state.services


def require_api_token(request: Request, authorization: str | None = Header(default=None)) -> None:
    expected = get_services(request).settings.RESPONSES_API_TOKEN
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Manual responses are disabled"
        )

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def _manual_message(sender: str, subject: str, body: str) -> InboundMessage:
    return InboundMessage(
        id="manual",
        sender=sender,
        sender_address=sender.strip().lower(),
        subject=subject,
        body=body,
    )


@router.post("/send", response_model=SendResponseResponse, dependencies=[Depends(require_api_token)])
async def send_response(request: Request, body: SendResponseRequest):
    """Send a reply, drafted from the knowledge base unless use_ai is false."""
    services = get_services(request)

    try:
        original = None
        if body.reply_to_message_id:
            original = await services.gmail.get_message(body.reply_to_message_id)

        reply = body.message_content
        if body.use_ai:
            knowledge = await services.knowledge.search(body.message_content)
            reply = await services.oracle.generate_response(
                _manual_message(body.to, body.subject, body.message_content),
                MANUAL_CLASSIFICATION,
                knowledge=knowledge,
            )

        message_id = await services.gmail.send(body.to, body.subject, reply, in_reply_to=original)

    except GmailApiError as e:
        logger.error("Gmail error sending manual response", to=body.to, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except Exception as e:
        logger.error("Error sending manual response", to=body.to, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to send response"
        )

    logger.info("Manual response sent", to=body.to, ai_generated=body.use_ai)
    return SendResponseResponse(
        success=True,
        message_id=message_id,
        to=body.to,
        subject=body.subject,
        ai_generated=body.use_ai,
    )


@router.get("/draft", response_model=DraftResponse, dependencies=[Depends(require_api_token)])
async def draft_response(
    request: Request,
    query: str = Query(..., min_length=1, description="Customer question to answer"),
    category: str | None = Query(default=None, description="Limit knowledge to one category"),
):
    """Draft a reply from the knowledge base without sending it."""
    services = get_services(request)

    try:
        knowledge = await services.knowledge.search(query, category=category)
        reply = await services.oracle.generate_response(
            _manual_message(DRAFT_SENDER, query, query),
            MANUAL_CLASSIFICATION,
            knowledge=knowledge,
        )
    except Exception as e:
        logger.error("Error drafting response", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to draft response"
        )

    return DraftResponse(query=query, response=reply, knowledge_used=[asdict(k) for k in knowledge])
