"""
Performs the single terminal action for a decided message.

Escalation always wins over the classified action. Collaborator failures
surface as ActionExecutionError, except a failed confirmation after a
refund has already gone through: the refund stands and the send failure is
reported in delivery_errors. A customer with no refundable charge is
escalated for a manual refund instead of failing the run.
"""

from typing import Any, Protocol

from support_agent.infrastructure.observability.logging import get_logger
from support_agent.models.domain.support_domain import (
    ActionOutcome,
    ActionType,
    ClassificationResult,
    EscalationDecision,
    InboundMessage,
    KnowledgeResult,
    Priority,
    RefundDecision,
    RequestContext,
)
from support_agent.pipeline.errors import ActionExecutionError
from support_agent.pipeline.messages import acknowledgement_reply, escalation_notice
from support_agent.pipeline.rule_engine import RuleEngine
from support_agent.services.billing_provider import (
    NoRefundableChargeError,
    RefundReceipt,
    refund_idempotency_key,
)

logger = get_logger(__name__)

MANUAL_REFUND_REASON = "Refund requires manual approval"
UNKNOWN_ACTION_REASON = "Unknown action type"
AI_ESCALATION_REASON = "AI recommended escalation"


class Messaging(Protocol):
    async def send(
        self, to: str, subject: str, body: str, in_reply_to: InboundMessage | None = None
    ) -> str: ...


class RefundIssuer(Protocol):
    async def issue_refund(
        self, customer_id: str, amount: int, reason: str, idempotency_key: str | None = None
    ) -> RefundReceipt: ...


class ResponseDrafter(Protocol):
    async def generate_response(
        self,
        message: InboundMessage,
        classification: ClassificationResult,
        context: RequestContext | None = None,
        knowledge: list[KnowledgeResult] | None = None,
        facts: dict[str, Any] | None = None,
    ) -> str: ...


class ActionExecutor:
    def __init__(
        self,
        messaging: Messaging,
        billing: RefundIssuer,
        drafter: ResponseDrafter,
        rule_engine: RuleEngine,
        admin_email: str,
        signature: str,
    ):
        self._messaging = messaging
        self._billing = billing
        self._drafter = drafter
        self._rules = rule_engine
        self._admin_email = admin_email
        self._signature = signature

    async def execute(
        self,
        message: InboundMessage,
        classification: ClassificationResult,
        escalation: EscalationDecision,
        refund_decision: RefundDecision | None = None,
        context: RequestContext | None = None,
        knowledge: list[KnowledgeResult] | None = None,
    ) -> ActionOutcome:
        """
        Dispatch to exactly one terminal action.

        Raises:
            ActionExecutionError: If a billing or messaging call fails
        """
        if escalation.escalate:
            return await self._escalate(message, classification, escalation, context)

        action = classification.action_type
        logger.info("Executing action", action_type=action)

        if action == ActionType.REFUND:
            return await self._refund(message, classification, refund_decision, context)

        if action == ActionType.HELP_RESPONSE:
            return await self._reply(
                message,
                classification,
                context,
                knowledge,
                action_taken="help_provided",
                details={
                    "category": classification.category or "general",
                    "knowledge_used": list(classification.knowledge_used),
                    "confidence": classification.confidence,
                },
            )

        if action == ActionType.GENERAL_INFO:
            return await self._reply(
                message,
                classification,
                None,
                knowledge,
                action_taken="info_provided",
                details={"topic": classification.category or "general"},
            )

        if action == ActionType.ESCALATE:
            reasons = (classification.escalation_reason or AI_ESCALATION_REASON,)
        else:
            logger.warning("Unknown action type", action_type=action)
            reasons = (UNKNOWN_ACTION_REASON,)

        decision = EscalationDecision(
            escalate=True,
            reasons=reasons,
            priority=self._rules.calculate_priority(reasons, classification.sentiment),
        )
        return await self._escalate(message, classification, decision, context)

    async def _send(
        self,
        action: str,
        to: str,
        subject: str,
        body: str,
        in_reply_to: InboundMessage | None = None,
    ) -> str:
        try:
            return await self._messaging.send(to, subject, body, in_reply_to=in_reply_to)
        except Exception as e:
            raise ActionExecutionError(f"Message send failed: {e}", action=action, cause=e) from e

    async def _escalate(
        self,
        message: InboundMessage,
        classification: ClassificationResult,
        escalation: EscalationDecision,
        context: RequestContext | None,
        extra_details: dict[str, Any] | None = None,
    ) -> ActionOutcome:
        logger.info(
            "Escalating message",
            reasons=list(escalation.reasons),
            priority=escalation.priority.value,
        )

        subject, body = escalation_notice(message, escalation, classification, context)
        notice_id = await self._send("escalate", self._admin_email, subject, body)
        ack_id = await self._send(
            "escalate",
            message.sender_address,
            message.subject,
            acknowledgement_reply(message.subject, self._signature),
            in_reply_to=message,
        )

        details = {
            "customer": message.sender_address,
            "reasons": list(escalation.reasons),
            "priority": escalation.priority.value,
            "notification_id": notice_id,
            "acknowledgement_id": ack_id,
        }
        if extra_details:
            details.update(extra_details)
        return ActionOutcome(action_taken="escalated", details=details, success=True)

    async def _refund(
        self,
        message: InboundMessage,
        classification: ClassificationResult,
        decision: RefundDecision | None,
        context: RequestContext | None,
    ) -> ActionOutcome:
        if decision is None:
            decision = self._rules.evaluate_refund(context, classification.refund_amount)

        customer_id = context.billing.customer_id if context and context.billing else None
        if not decision.auto_approve or customer_id is None:
            return await self._manual_refund(
                message,
                classification,
                context,
                decision,
                {"billing_customer_found": customer_id is not None},
            )

        try:
            receipt = await self._billing.issue_refund(
                customer_id,
                decision.amount,
                decision.reasoning,
                idempotency_key=refund_idempotency_key(message.id),
            )
        except NoRefundableChargeError as e:
            logger.warning("No refundable charge, escalating for manual refund", error=str(e))
            return await self._manual_refund(
                message,
                classification,
                context,
                decision,
                {"billing_customer_found": True, "billing_diagnostic": str(e)},
            )
        except Exception as e:
            raise ActionExecutionError(f"Refund failed: {e}", action="refund", cause=e) from e

        details = {
            "customer": message.sender_address,
            "amount": receipt.amount,
            "refund_id": receipt.refund_id,
            "reasoning": decision.reasoning,
            "automatic": True,
        }

        # The refund stands even if the confirmation cannot be delivered
        delivery_errors: tuple[str, ...] = ()
        reply = await self._drafter.generate_response(
            message,
            classification,
            context,
            facts={"refund_processed": True, "refund_amount": f"{receipt.amount / 100:.2f}"},
        )
        try:
            details["confirmation_id"] = await self._messaging.send(
                message.sender_address, message.subject, reply, in_reply_to=message
            )
        except Exception as e:
            logger.error("Refund confirmation not delivered", refund_id=receipt.refund_id, error=str(e))
            delivery_errors = (f"confirmation send failed: {e}",)

        return ActionOutcome(
            action_taken="refund_processed",
            details=details,
            success=True,
            delivery_errors=delivery_errors,
        )

    async def _manual_refund(
        self,
        message: InboundMessage,
        classification: ClassificationResult,
        context: RequestContext | None,
        decision: RefundDecision,
        billing_details: dict[str, Any],
    ) -> ActionOutcome:
        manual = EscalationDecision(escalate=True, reasons=(MANUAL_REFUND_REASON,), priority=Priority.HIGH)
        return await self._escalate(
            message,
            classification,
            manual,
            context,
            extra_details={
                "refund_amount": decision.amount,
                "refund_reasoning": decision.reasoning,
                **billing_details,
            },
        )

    async def _reply(
        self,
        message: InboundMessage,
        classification: ClassificationResult,
        context: RequestContext | None,
        knowledge: list[KnowledgeResult] | None,
        action_taken: str,
        details: dict[str, Any],
    ) -> ActionOutcome:
        reply = await self._drafter.generate_response(message, classification, context, knowledge)
        reply_id = await self._send(
            action_taken, message.sender_address, message.subject, reply, in_reply_to=message
        )
        return ActionOutcome(
            action_taken=action_taken,
            details={"customer": message.sender_address, "reply_id": reply_id, **details},
            success=True,
        )
