"""Fixed message copy. Nothing here is AI-generated."""

import json
import traceback
from typing import Any

from support_agent.models.domain.support_domain import (
    ClassificationResult,
    EscalationDecision,
    InboundMessage,
    RequestContext,
)

ESCALATION_SUBJECT_PREFIX = "[ESCALATED]"
SYSTEM_ERROR_SUBJECT = "[SYSTEM ERROR] Support message processing failed"


def acknowledgement_reply(subject: str, signature: str) -> str:
    """Customer acknowledgement sent when a human takes over."""
    return (
        "Hi there,\n\n"
        f'Thank you for contacting support. We\'ve received your message about "{subject}" '
        "and we're reviewing it carefully.\n\n"
        "A team member will get back to you shortly with a detailed response.\n\n"
        "Best regards,\n"
        f"{signature}"
    )


def holding_reply(subject: str, signature: str) -> str:
    """Reply used when drafting a response failed."""
    return (
        "Hi there,\n\n"
        f'Thank you for contacting support. We received your message about "{subject}" '
        "and we're looking into it.\n\n"
        "A team member will review your request and get back to you shortly.\n\n"
        "Best regards,\n"
        f"{signature}"
    )


def _as_json(value: Any) -> str:
    return json.dumps(value, indent=2, default=str)


def escalation_notice(
    message: InboundMessage,
    escalation: EscalationDecision,
    classification: ClassificationResult,
    context: RequestContext | None,
) -> tuple[str, str]:
    """Subject and body of the internal notification for a human reviewer."""
    subject = f"{ESCALATION_SUBJECT_PREFIX} {message.subject}"
    body = f"""Customer support escalation:

FROM: {message.sender}
SUBJECT: {message.subject}
ESCALATION REASONS: {", ".join(escalation.reasons)}
PRIORITY: {escalation.priority}

ORIGINAL EMAIL:
{message.body}

AI ANALYSIS:
{_as_json(classification.to_dict())}

USER CONTEXT:
{_as_json(context.to_prompt_dict() if context else None)}

Please review and respond manually."""
    return subject, body


def emergency_notice(message_id: str, message: InboundMessage | None, error: BaseException) -> str:
    """Body of the internal alert sent when a run fails after a decision."""
    details = (
        f"FROM: {message.sender}\nSUBJECT: {message.subject}\n\nORIGINAL EMAIL:\n{message.body}"
        if message
        else "Original message could not be loaded."
    )
    trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return f"""Support message processing failed and needs manual handling.

MESSAGE ID: {message_id}
ERROR: {type(error).__name__}: {error}

{details}

TRACEBACK:
{trace}

The message was left unread and will be retried on the next trigger."""
