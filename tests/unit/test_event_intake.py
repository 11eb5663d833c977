import asyncio

import pytest

from support_agent.models.domain.support_domain import ProjectRecord
from support_agent.pipeline.action_executor import ActionExecutor
from support_agent.pipeline.context_aggregator import ContextAggregator
from support_agent.pipeline.event_intake import EventIntake, RunStatus
from support_agent.pipeline.idempotency import DONE_PREFIX, LEASE_PREFIX, IdempotencyLeases
from support_agent.pipeline.rule_engine import RuleEngine
from tests.fakes import (
    NOW,
    FakeAccounts,
    FakeBilling,
    FakeKnowledge,
    FakeMailbox,
    FakeOracle,
    FakeRedis,
    make_account,
    make_classification,
    make_message,
)

ADMIN = "admin@example.com"


class SlowOracle(FakeOracle):
    async def classify(self, message, context=None, knowledge=None):
        await asyncio.sleep(5)
        return self.result


class SlowFetchMailbox(FakeMailbox):
    async def get_message(self, message_id):
        await asyncio.sleep(5)
        return self.messages[message_id]


def _intake(
    mailbox,
    recorder,
    rules,
    oracle=None,
    redis=None,
    accounts=None,
    billing=None,
    timeout=5.0,
) -> EventIntake:
    rule_engine = RuleEngine(rules)
    oracle = oracle or FakeOracle(make_classification())
    billing = billing or FakeBilling()
    return EventIntake(
        mailbox=mailbox,
        leases=IdempotencyLeases(redis or FakeRedis(), 150_000, 604_800),
        aggregator=ContextAggregator(
            accounts or FakeAccounts(account=make_account()), billing, rules.refunds, clock=lambda: NOW
        ),
        oracle=oracle,
        knowledge=FakeKnowledge(),
        rule_engine=rule_engine,
        executor=ActionExecutor(mailbox, billing, oracle, rule_engine, ADMIN, "Support Team"),
        recorder=recorder,
        rules=rules,
        admin_email=ADMIN,
        run_timeout_s=timeout,
    )


@pytest.mark.asyncio
async def test_help_request_is_answered_and_acknowledged(recorder, rules):
    mailbox = FakeMailbox([make_message(body="How do I upload a logo?", subject="Upload help")])
    redis = FakeRedis()

    summary = await _intake(mailbox, recorder, rules, redis=redis).process_pending()

    assert summary.candidates == 1
    assert summary.results[0].status == RunStatus.PROCESSED
    assert summary.results[0].action_taken == "help_provided"
    assert mailbox.acknowledged == ["msg-1"]
    assert recorder.types() == ["help_provided"]
    assert recorder.records[0].details["message_id"] == "msg-1"
    assert redis.store[f"{DONE_PREFIX}msg-1"] == "help_provided"
    assert f"{LEASE_PREFIX}msg-1" not in redis.store


@pytest.mark.asyncio
async def test_concurrent_triggers_send_exactly_one_reply(recorder, rules):
    mailbox = FakeMailbox([make_message(body="How do I upload a logo?", subject="Upload help")])
    intake = _intake(mailbox, recorder, rules)

    first, second = await asyncio.gather(intake.process_pending(), intake.process_pending())

    statuses = sorted(result.status for result in first.results + second.results)
    assert statuses == [RunStatus.DUPLICATE, RunStatus.PROCESSED]
    assert len(mailbox.sent) == 1
    assert len(recorder.records) == 1


@pytest.mark.asyncio
async def test_completed_message_is_not_processed_again(recorder, rules):
    mailbox = FakeMailbox([make_message()])
    redis = FakeRedis()
    await redis.set_with_ttl(f"{DONE_PREFIX}msg-1", "help_provided")
    oracle = FakeOracle(make_classification())

    result = await _intake(mailbox, recorder, rules, oracle=oracle, redis=redis).process_message("msg-1")

    assert result.status == RunStatus.DUPLICATE
    assert oracle.classified == []
    assert mailbox.sent == []
    assert mailbox.acknowledged == ["msg-1"]


@pytest.mark.asyncio
async def test_automated_sender_is_ignored(recorder, rules):
    mailbox = FakeMailbox([make_message(sender="noreply@billing.example.com")])
    oracle = FakeOracle(make_classification())

    result = await _intake(mailbox, recorder, rules, oracle=oracle).process_message("msg-1")

    assert result.status == RunStatus.IGNORED
    assert oracle.classified == []
    assert mailbox.sent == []
    assert mailbox.acknowledged == ["msg-1"]
    assert recorder.types() == ["ignored"]


@pytest.mark.asyncio
async def test_refund_with_completed_projects_escalates_high(recorder, rules):
    mailbox = FakeMailbox([make_message()])
    accounts = FakeAccounts(
        account=make_account(),
        projects=[ProjectRecord(id=f"p{i}", name="Done", status="completed") for i in range(3)],
        compliant_assets=2,
    )
    billing = FakeBilling(
        customer={"id": "cus_1"}, charges=[{"id": "ch_1", "amount": 49900, "status": "succeeded"}]
    )
    oracle = FakeOracle(make_classification(action_type="refund"))

    result = await _intake(
        mailbox, recorder, rules, oracle=oracle, accounts=accounts, billing=billing
    ).process_message("msg-1")

    assert result.action_taken == "escalated"
    assert billing.refunds == []
    assert recorder.records[0].details["priority"] == "high"
    assert recorder.records[0].details["reasons"] == ["Refund requires manual approval"]


@pytest.mark.asyncio
async def test_eligible_refund_is_issued_once(recorder, rules):
    mailbox = FakeMailbox([make_message()])
    accounts = FakeAccounts(account=make_account(), compliant_assets=2)
    billing = FakeBilling(
        customer={"id": "cus_1"}, charges=[{"id": "ch_1", "amount": 49900, "status": "succeeded"}]
    )
    oracle = FakeOracle(make_classification(action_type="refund"))
    intake = _intake(mailbox, recorder, rules, oracle=oracle, accounts=accounts, billing=billing)

    await intake.process_message("msg-1")
    again = await intake.process_message("msg-1")

    assert again.status == RunStatus.DUPLICATE
    assert billing.refunds == [
        {"customer_id": "cus_1", "amount": 49900, "idempotency_key": "refund-msg-1"}
    ]
    assert recorder.types() == ["refund_processed"]


@pytest.mark.asyncio
async def test_failure_is_isolated_to_its_message(recorder, rules):
    mailbox = FakeMailbox(
        [
            make_message("msg-1", sender="broken@example.com", subject="Help"),
            make_message("msg-2", sender="fine@example.com", subject="Help"),
        ]
    )
    mailbox.fail_sends_to.add("broken@example.com")

    summary = await _intake(mailbox, recorder, rules).process_pending()

    assert [result.status for result in summary.results] == [RunStatus.FAILED, RunStatus.PROCESSED]
    assert mailbox.acknowledged == ["msg-2"]
    assert recorder.types() == ["processing_failed", "help_provided"]
    assert recorder.records[0].details["action"] == "help_provided"
    emergency = [sent for sent in mailbox.sent if sent["to"] == ADMIN]
    assert emergency[0]["subject"] == "[SYSTEM ERROR] Support message processing failed"


@pytest.mark.asyncio
async def test_run_deadline_leaves_message_unread(recorder, rules):
    mailbox = FakeMailbox([make_message()])
    redis = FakeRedis()
    intake = _intake(
        mailbox, recorder, rules, oracle=SlowOracle(make_classification()), redis=redis, timeout=0.05
    )

    result = await intake.process_message("msg-1")

    assert result.status == RunStatus.TIMED_OUT
    assert mailbox.sent == []
    assert mailbox.acknowledged == []
    assert recorder.types() == ["processing_timed_out"]
    assert redis.store == {}


@pytest.mark.asyncio
async def test_summary_to_dict_counts_statuses(recorder, rules):
    mailbox = FakeMailbox([make_message("msg-1"), make_message("msg-2", sender="noreply@x.com")])

    summary = await _intake(mailbox, recorder, rules).process_pending()
    data = summary.to_dict()

    assert data["candidates"] == 2
    assert data["processed"] == 1
    assert data["ignored"] == 1
    assert data["failed"] == 0
    assert len(data["results"]) == 2


@pytest.mark.asyncio
async def test_slow_fetch_counts_against_run_deadline(recorder, rules):
    mailbox = SlowFetchMailbox([make_message()])
    redis = FakeRedis()

    result = await _intake(mailbox, recorder, rules, redis=redis, timeout=0.05).process_message("msg-1")

    assert result.status == RunStatus.TIMED_OUT
    assert mailbox.sent == []
    assert mailbox.acknowledged == []
    assert recorder.types() == ["processing_timed_out"]
    assert recorder.records[0].details["customer"] is None
    assert redis.store == {}


@pytest.mark.asyncio
async def test_failed_emergency_escalation_is_only_logged(recorder, rules):
    mailbox = FakeMailbox(
        [make_message(body="How do I upload a logo?", subject="Upload help", sender="jane@example.com")]
    )
    mailbox.fail_sends_to.update({"jane@example.com", ADMIN})

    result = await _intake(mailbox, recorder, rules).process_message("msg-1")

    assert result.status == RunStatus.FAILED
    assert mailbox.acknowledged == []
    assert mailbox.sent == []
    assert recorder.types() == ["processing_failed"]
    assert recorder.records[0].details["customer"] == "jane@example.com"
    assert mailbox.send_attempts.count(ADMIN) == 1
