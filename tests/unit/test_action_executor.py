import pytest

from support_agent.models.domain.support_domain import (
    BillingProfile,
    EscalationDecision,
    Priority,
    RefundDecision,
    RequestContext,
    UsageFacts,
)
from support_agent.pipeline.action_executor import ActionExecutor
from support_agent.pipeline.errors import ActionExecutionError
from support_agent.pipeline.rule_engine import RuleEngine
from tests.fakes import FakeBilling, FakeOracle, make_classification, make_message

ADMIN = "admin@example.com"
NO_ESCALATION = EscalationDecision(escalate=False)


def _context(customer_id: str | None = "cus_1") -> RequestContext:
    billing = None
    if customer_id:
        billing = BillingProfile(
            customer_id=customer_id, charges=({"id": "ch_1", "amount": 49900, "status": "succeeded"},)
        )
    return RequestContext(
        email="jane@example.com",
        identity_found=True,
        usage=UsageFacts(compliant_assets=1, completed_projects=0, days_since_signup=3),
        billing=billing,
    )


@pytest.fixture
def billing():
    return FakeBilling(customer={"id": "cus_1"}, charges=[{"id": "ch_1", "amount": 49900}])


@pytest.fixture
def oracle():
    return FakeOracle(make_classification())


@pytest.fixture
def executor(mailbox, billing, oracle, rules):
    return ActionExecutor(mailbox, billing, oracle, RuleEngine(rules), ADMIN, "Support Team")


@pytest.mark.asyncio
async def test_escalation_wins_over_refund(executor, mailbox, billing):
    classification = make_classification(action_type="refund")
    escalation = EscalationDecision(
        escalate=True, reasons=("Escalation keyword found: lawsuit",), priority=Priority.CRITICAL
    )
    approved = RefundDecision(auto_approve=True, amount=49900, reasoning="Auto-approved: test")

    outcome = await executor.execute(make_message(), classification, escalation, approved, _context())

    assert outcome.action_taken == "escalated"
    assert outcome.details["priority"] == "critical"
    assert billing.refunds == []
    assert [sent["to"] for sent in mailbox.sent] == [ADMIN, "jane@example.com"]
    assert mailbox.sent[0]["subject"] == "[ESCALATED] Refund request"
    assert mailbox.sent[1]["in_reply_to"].id == "msg-1"


@pytest.mark.asyncio
async def test_approved_refund_is_issued_and_confirmed(executor, mailbox, billing, oracle):
    decision = RefundDecision(auto_approve=True, amount=49900, reasoning="Auto-approved: test")

    outcome = await executor.execute(
        make_message(), make_classification(action_type="refund"), NO_ESCALATION, decision, _context()
    )

    assert outcome.action_taken == "refund_processed"
    assert outcome.details["amount"] == 49900
    assert outcome.delivery_errors == ()
    assert billing.refunds == [
        {"customer_id": "cus_1", "amount": 49900, "idempotency_key": "refund-msg-1"}
    ]
    assert oracle.drafts[0]["facts"] == {"refund_processed": True, "refund_amount": "499.00"}
    assert [sent["to"] for sent in mailbox.sent] == ["jane@example.com"]


@pytest.mark.asyncio
async def test_unapproved_refund_becomes_high_priority_escalation(executor, mailbox, billing):
    decision = RefundDecision(
        auto_approve=False, amount=49900, reasoning="Requires review: Has completed projects (3)"
    )

    outcome = await executor.execute(
        make_message(), make_classification(action_type="refund"), NO_ESCALATION, decision, _context()
    )

    assert outcome.action_taken == "escalated"
    assert outcome.details["priority"] == Priority.HIGH.value
    assert outcome.details["reasons"] == ["Refund requires manual approval"]
    assert outcome.details["refund_reasoning"].startswith("Requires review")
    assert billing.refunds == []


@pytest.mark.asyncio
async def test_refund_without_billing_customer_is_escalated(executor, billing):
    decision = RefundDecision(auto_approve=True, amount=49900, reasoning="Auto-approved: test")

    outcome = await executor.execute(
        make_message(),
        make_classification(action_type="refund"),
        NO_ESCALATION,
        decision,
        _context(customer_id=None),
    )

    assert outcome.action_taken == "escalated"
    assert outcome.details["billing_customer_found"] is False
    assert billing.refunds == []


@pytest.mark.asyncio
async def test_refund_failure_raises_action_error(executor, mailbox, billing):
    billing.fail_refund = True
    decision = RefundDecision(auto_approve=True, amount=49900, reasoning="Auto-approved: test")

    with pytest.raises(ActionExecutionError) as exc_info:
        await executor.execute(
            make_message(), make_classification(action_type="refund"), NO_ESCALATION, decision, _context()
        )

    assert exc_info.value.action == "refund"
    assert mailbox.sent == []


@pytest.mark.asyncio
async def test_no_refundable_charge_escalates_for_manual_refund(executor, mailbox):
    executor._billing = FakeBilling(customer={"id": "cus_1"})
    decision = RefundDecision(auto_approve=True, amount=49900, reasoning="Auto-approved: test")

    outcome = await executor.execute(
        make_message(), make_classification(action_type="refund"), NO_ESCALATION, decision, _context()
    )

    assert outcome.success is True
    assert outcome.action_taken == "escalated"
    assert outcome.details["reasons"] == ["Refund requires manual approval"]
    assert outcome.details["priority"] == Priority.HIGH.value
    assert outcome.details["billing_diagnostic"] == "No refundable charge found"
    assert [sent["to"] for sent in mailbox.sent] == [ADMIN, "jane@example.com"]


@pytest.mark.asyncio
async def test_confirmation_failure_keeps_refund(executor, mailbox, billing):
    mailbox.fail_sends_to.add("jane@example.com")
    decision = RefundDecision(auto_approve=True, amount=1000, reasoning="Auto-approved: test")

    outcome = await executor.execute(
        make_message(), make_classification(action_type="refund"), NO_ESCALATION, decision, _context()
    )

    assert outcome.success is True
    assert outcome.action_taken == "refund_processed"
    assert len(billing.refunds) == 1
    assert outcome.delivery_errors[0].startswith("confirmation send failed")


@pytest.mark.asyncio
async def test_help_response_sends_threaded_reply(executor, mailbox):
    classification = make_classification(category="assets", knowledge_used=("faq",))

    outcome = await executor.execute(make_message(), classification, NO_ESCALATION, context=_context())

    assert outcome.action_taken == "help_provided"
    assert outcome.details["category"] == "assets"
    assert outcome.details["knowledge_used"] == ["faq"]
    assert mailbox.sent[0]["body"] == "Thanks for reaching out."
    assert mailbox.sent[0]["in_reply_to"].id == "msg-1"


@pytest.mark.asyncio
async def test_general_info_reply(executor, mailbox):
    outcome = await executor.execute(
        make_message(), make_classification(action_type="general_info"), NO_ESCALATION
    )

    assert outcome.action_taken == "info_provided"
    assert outcome.details["topic"] == "general"
    assert len(mailbox.sent) == 1


@pytest.mark.asyncio
async def test_reply_send_failure_raises(executor, mailbox):
    mailbox.fail_sends_to.add("jane@example.com")

    with pytest.raises(ActionExecutionError) as exc_info:
        await executor.execute(make_message(), make_classification(), NO_ESCALATION)

    assert exc_info.value.action == "help_provided"


@pytest.mark.asyncio
async def test_unknown_action_is_escalated(executor, mailbox):
    outcome = await executor.execute(
        make_message(), make_classification(action_type="schedule_call"), NO_ESCALATION
    )

    assert outcome.action_taken == "escalated"
    assert outcome.details["reasons"] == ["Unknown action type"]
    assert len(mailbox.sent) == 2


@pytest.mark.asyncio
async def test_oracle_escalate_uses_its_reason(executor):
    classification = make_classification(
        action_type="escalate", escalation_reason="Customer asked for a manager"
    )

    outcome = await executor.execute(make_message(), classification, NO_ESCALATION)

    assert outcome.details["reasons"] == ["Customer asked for a manager"]
