"""
Deterministic policy for escalation and refunds.

Both decisions are pure functions of already-aggregated facts: no I/O, no
clock, no randomness. Thresholds come from the validated BusinessRules.
"""

from support_agent.config import BusinessRules
from support_agent.infrastructure.observability.logging import get_logger
from support_agent.models.domain.support_domain import (
    ClassificationResult,
    EscalationDecision,
    InboundMessage,
    Priority,
    RefundDecision,
    RequestContext,
)

logger = get_logger(__name__)


class RuleEngine:
    def __init__(self, rules: BusinessRules):
        self.rules = rules

    def should_escalate(
        self,
        message: InboundMessage,
        classification: ClassificationResult,
        context: RequestContext | None,
    ) -> EscalationDecision:
        """
        Collect every escalation reason; escalate when there is at least one.

        All four checks run regardless of earlier hits so the reviewer sees
        the full picture.
        """
        escalation = self.rules.escalation
        reasons: list[str] = []

        if classification.confidence < escalation.confidence_threshold:
            reasons.append(f"Low AI confidence: {classification.confidence}")

        content = message.searchable_text().lower()
        for keyword in escalation.keywords:
            if keyword.lower() in content:
                reasons.append(f"Escalation keyword found: {keyword}")

        if (
            classification.sentiment is not None
            and classification.sentiment < escalation.sentiment_threshold
        ):
            reasons.append(f"Negative sentiment: {classification.sentiment}")

        if context is not None and context.billing is not None and context.billing.has_disputes:
            reasons.append("Customer has active billing disputes")

        decision = EscalationDecision(
            escalate=bool(reasons),
            reasons=tuple(reasons),
            priority=self.calculate_priority(reasons, classification.sentiment),
        )
        logger.info(
            "Escalation evaluated",
            escalate=decision.escalate,
            reasons=list(decision.reasons),
            priority=decision.priority.value,
        )
        return decision

    def calculate_priority(self, reasons: list[str] | tuple[str, ...], sentiment: float | None) -> Priority:
        """High-severity keywords dominate, then strong negativity or many reasons."""
        escalation = self.rules.escalation
        severe = [keyword.lower() for keyword in escalation.high_severity_keywords]

        if any(keyword in reason.lower() for reason in reasons for keyword in severe):
            return Priority.CRITICAL

        if sentiment is not None and sentiment < escalation.high_priority_sentiment:
            return Priority.HIGH

        if len(reasons) > escalation.high_priority_reason_count:
            return Priority.HIGH

        return Priority.MEDIUM

    def evaluate_refund(
        self, context: RequestContext | None, requested_amount: int | None = None
    ) -> RefundDecision:
        """
        Decide whether a refund may be issued without a human.

        Approve only when every usage threshold passes. Missing usage facts
        fail every check. When billing history is known the amount is capped
        at what the customer actually paid, and a capped amount is never
        auto-approved.
        """
        refunds = self.rules.refunds
        amount = requested_amount if requested_amount and requested_amount > 0 else refunds.default_refund_amount

        usage = context.usage if context is not None else None
        if usage is None:
            conditions = {
                "compliant_assets": False,
                "completed_projects": False,
                "days_since_signup": False,
            }
            passed: list[str] = []
            failed = ["Account usage unavailable"]
        else:
            conditions = {
                "compliant_assets": usage.compliant_assets < refunds.max_compliant_assets,
                "completed_projects": usage.completed_projects <= refunds.max_completed_projects,
                "days_since_signup": usage.days_since_signup <= refunds.max_days_since_signup,
            }
            passed, failed = [], []
            if conditions["compliant_assets"]:
                passed.append(f"Low asset usage ({usage.compliant_assets} assets)")
            else:
                failed.append(f"High asset usage ({usage.compliant_assets} assets)")
            if conditions["completed_projects"]:
                passed.append(f"No completed projects ({usage.completed_projects})")
            else:
                failed.append(f"Has completed projects ({usage.completed_projects})")
            if conditions["days_since_signup"]:
                passed.append(f"Recent signup ({usage.days_since_signup} days)")
            else:
                failed.append(f"Long-term user ({usage.days_since_signup} days)")

        billing = context.billing if context is not None else None
        if billing is not None:
            total_paid = billing.total_paid
            conditions["within_total_paid"] = amount <= total_paid
            if amount > total_paid:
                failed.append(f"Requested {amount} exceeds total paid {total_paid}")
                amount = total_paid

        approved = all(conditions.values())
        if approved:
            reasoning = f"Auto-approved: {', '.join(passed)}"
        else:
            reasoning = f"Requires review: {', '.join(failed)}"

        logger.info("Refund evaluated", auto_approve=approved, amount=amount)
        return RefundDecision(
            auto_approve=approved,
            amount=amount,
            reasoning=reasoning,
            conditions=conditions,
        )
