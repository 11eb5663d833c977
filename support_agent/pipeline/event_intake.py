"""
EventIntake - drives one pipeline run per candidate message.

Each run holds an idempotency lease for its message id, runs under a
deadline, and acknowledges (marks processed) only after a successful
terminal action. Failures stay inside the run that raised them.
"""

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from support_agent.config import BusinessRules
from support_agent.infrastructure.audit import ActivityRecorder
from support_agent.infrastructure.observability.logging import bound_log_context, get_logger
from support_agent.models.domain.gmail_domain import is_automated
from support_agent.models.domain.support_domain import (
    ActionOutcome,
    ActionType,
    InboundMessage,
)
from support_agent.pipeline.action_executor import ActionExecutor
from support_agent.pipeline.context_aggregator import ContextAggregator
from support_agent.pipeline.errors import ActionExecutionError
from support_agent.pipeline.idempotency import IdempotencyLeases
from support_agent.pipeline.messages import SYSTEM_ERROR_SUBJECT, emergency_notice
from support_agent.pipeline.rule_engine import RuleEngine
from support_agent.services.classification_service import ClassificationService
from support_agent.services.knowledge_base import KnowledgeBase

logger = get_logger(__name__)


class Mailbox(Protocol):
    async def list_candidates(self, query: str, max_results: int = 50) -> list[str]: ...

    async def get_message(self, message_id: str) -> InboundMessage: ...

    async def send(
        self, to: str, subject: str, body: str, in_reply_to: InboundMessage | None = None
    ) -> str: ...

    async def mark_processed(self, message_id: str) -> None: ...


class RunStatus(StrEnum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True, slots=True)
class MessageRunResult:
    message_id: str
    status: RunStatus
    action_taken: str | None = None
    error: str | None = None


@dataclass(slots=True)
class IntakeSummary:
    candidates: int = 0
    results: list[MessageRunResult] = field(default_factory=list)

    def count(self, status: RunStatus) -> int:
        return sum(1 for result in self.results if result.status == status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidates": self.candidates,
            **{status.value: self.count(status) for status in RunStatus},
            "results": [
                {
                    "message_id": result.message_id,
                    "status": result.status.value,
                    "action_taken": result.action_taken,
                    "error": result.error,
                }
                for result in self.results
            ],
        }


@dataclass(slots=True)
class _LeasedRun:
    message_id: str
    message: InboundMessage | None = None


class EventIntake:
    def __init__(
        self,
        mailbox: Mailbox,
        leases: IdempotencyLeases,
        aggregator: ContextAggregator,
        oracle: ClassificationService,
        knowledge: KnowledgeBase,
        rule_engine: RuleEngine,
        executor: ActionExecutor,
        recorder: ActivityRecorder,
        rules: BusinessRules,
        admin_email: str,
        run_timeout_s: float,
        candidate_query: str = "in:inbox is:unread",
        batch_size: int = 50,
    ):
        self._mailbox = mailbox
        self._leases = leases
        self._aggregator = aggregator
        self._oracle = oracle
        self._knowledge = knowledge
        self._rule_engine = rule_engine
        self._executor = executor
        self._recorder = recorder
        self._rules = rules
        self._admin_email = admin_email
        self._run_timeout_s = run_timeout_s
        self._candidate_query = candidate_query
        self._batch_size = batch_size

    async def process_pending(self) -> IntakeSummary:
        """
        Run the pipeline for every candidate message.

        Raises:
            GmailApiError: If the candidate listing itself fails
        """
        message_ids = await self._mailbox.list_candidates(self._candidate_query, self._batch_size)
        summary = IntakeSummary(candidates=len(message_ids))

        for message_id in message_ids:
            summary.results.append(await self.process_message(message_id))

        logger.info(
            "Intake pass complete",
            candidates=summary.candidates,
            processed=summary.count(RunStatus.PROCESSED),
            failed=summary.count(RunStatus.FAILED),
        )
        return summary

    async def process_message(self, message_id: str) -> MessageRunResult:
        """One isolated pipeline run. Never raises."""
        with bound_log_context(message_id=message_id):
            async with self._leases.hold(message_id) as acquired:
                if not acquired:
                    return MessageRunResult(message_id, RunStatus.DUPLICATE)
                return await self._run_leased(message_id)

    async def _run_leased(self, message_id: str) -> MessageRunResult:
        run = _LeasedRun(message_id)
        try:
            result = await asyncio.wait_for(self._run_to_outcome(run), self._run_timeout_s)

        except TimeoutError:
            logger.error("Pipeline run timed out, leaving message unread", timeout_s=self._run_timeout_s)
            await self._recorder.append(
                "processing_timed_out",
                {
                    "message_id": message_id,
                    "customer": run.message.sender_address if run.message else None,
                    "timeout_seconds": self._run_timeout_s,
                },
            )
            return MessageRunResult(message_id, RunStatus.TIMED_OUT, error="run deadline exceeded")

        except Exception as e:
            logger.error("Pipeline run failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            await self._emergency_escalation(message_id, run.message, e)
            await self._recorder.append(
                "processing_failed",
                {
                    "message_id": message_id,
                    "customer": run.message.sender_address if run.message else None,
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "action": e.action if isinstance(e, ActionExecutionError) else None,
                },
            )
            return MessageRunResult(message_id, RunStatus.FAILED, error=str(e))

        if isinstance(result, MessageRunResult):
            return result

        outcome = result
        if not outcome.success:
            return MessageRunResult(message_id, RunStatus.FAILED, outcome.action_taken, "action unsuccessful")

        # Past the deadline boundary; the lease margin covers the marker and acknowledgement
        await self._leases.mark_completed(message_id, outcome.action_taken)
        await self._acknowledge(message_id)
        return MessageRunResult(message_id, RunStatus.PROCESSED, outcome.action_taken)

    async def _run_to_outcome(self, run: _LeasedRun) -> MessageRunResult | ActionOutcome:
        """Everything up to the terminal action; bounded by the run deadline."""
        message_id = run.message_id
        if await self._leases.is_completed(message_id):
            logger.info("Message already handled, acknowledging")
            await self._acknowledge(message_id)
            return MessageRunResult(message_id, RunStatus.DUPLICATE)

        run.message = message = await self._mailbox.get_message(message_id)

        if is_automated(message, self._rules.automated_sender_patterns):
            logger.info("Skipping automated message", sender=message.sender_address)
            await self._acknowledge(message_id)
            await self._recorder.append(
                "ignored",
                {"message_id": message_id, "customer": message.sender_address, "reason": "automated sender"},
            )
            return MessageRunResult(message_id, RunStatus.IGNORED)

        return await self._decide_and_act(message)

    async def _decide_and_act(self, message: InboundMessage) -> ActionOutcome:
        context = await self._aggregator.build_context(message.sender_address)
        knowledge = await self._knowledge.search(message.searchable_text())
        classification = await self._oracle.classify(message, context, knowledge)

        escalation = self._rule_engine.should_escalate(message, classification, context)
        refund_decision = None
        if not escalation.escalate and classification.action_type == ActionType.REFUND:
            refund_decision = self._rule_engine.evaluate_refund(context, classification.refund_amount)

        outcome = await self._executor.execute(
            message, classification, escalation, refund_decision, context, knowledge
        )

        await self._recorder.append(
            outcome.action_taken,
            {
                "message_id": message.id,
                **outcome.details,
                "classification": {
                    "action_type": classification.action_type,
                    "confidence": classification.confidence,
                    "reasoning": classification.reasoning,
                },
                "delivery_errors": list(outcome.delivery_errors),
            },
        )
        return outcome

    async def _acknowledge(self, message_id: str) -> None:
        try:
            await self._mailbox.mark_processed(message_id)
        except Exception as e:
            logger.warning("Failed to mark message processed", error=str(e))

    async def _emergency_escalation(
        self, message_id: str, message: InboundMessage | None, error: BaseException
    ) -> None:
        try:
            await self._mailbox.send(
                self._admin_email, SYSTEM_ERROR_SUBJECT, emergency_notice(message_id, message, error)
            )
            logger.info("Emergency escalation sent")
        except Exception as e:
            logger.error("Emergency escalation failed", error=str(e))
