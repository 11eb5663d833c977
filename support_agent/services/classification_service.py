"""
Classification oracle adapter.
Sends a support message with its context and reference knowledge to OpenAI,
validates the JSON verdict, and drafts customer replies. Neither operation
raises: failures degrade to a fixed escalation verdict or holding reply.
"""

import asyncio
import json
from typing import Any

import openai
from openai import AsyncOpenAI
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from support_agent.infrastructure.observability.logging import get_logger
from support_agent.models.domain.support_domain import (
    ActionType,
    ClassificationResult,
    InboundMessage,
    KnowledgeResult,
    RequestContext,
)
from support_agent.pipeline.errors import ClassificationError
from support_agent.pipeline.messages import acknowledgement_reply, holding_reply

logger = get_logger(__name__)

FALLBACK_CONFIDENCE = 0.1
FALLBACK_REASONING = "analysis failed"
MAX_KNOWLEDGE_ITEMS = 5


class OracleVerdict(BaseModel):
    """Shape the oracle must answer with. Accepts snake_case or camelCase keys."""

    model_config = ConfigDict(extra="ignore")

    action_type: str = Field(
        strict=True, min_length=1, validation_alias=AliasChoices("action_type", "actionType")
    )
    confidence: float = Field(strict=True, ge=0.0, le=1.0)
    reasoning: str = Field(strict=True)
    suggested_response: str = Field(
        strict=True, validation_alias=AliasChoices("suggested_response", "suggestedResponse")
    )
    refund_amount: int | None = Field(
        default=None, validation_alias=AliasChoices("refund_amount", "refundAmount")
    )
    escalation_reason: str | None = Field(
        default=None, validation_alias=AliasChoices("escalation_reason", "escalationReason")
    )
    sentiment: float | None = Field(default=None, ge=-1.0, le=1.0)
    category: str | None = None
    knowledge_used: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("knowledge_used", "knowledgeUsed")
    )

    @field_validator("refund_amount", mode="before")
    @classmethod
    def _parse_refund_amount(cls, value: Any) -> int | None:
        """Minor units; anything unparsable or non-positive means "not supplied"."""
        if value is None or isinstance(value, bool):
            return None
        try:
            amount = int(round(float(value)))
        except (TypeError, ValueError):
            return None
        return amount if amount > 0 else None

    @field_validator("knowledge_used", mode="before")
    @classmethod
    def _keep_strings(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, str)]

    @field_validator("escalation_reason", "category", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class ClassificationService:
    """OpenAI-backed classifier and reply drafter for support messages."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        temperature: float = 0.2,
        max_tokens: int = 1200,
        max_retries: int = 3,
        signature: str = "Support Team",
    ):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self.signature = signature

    # -----------------------------------------------------------------
    # Prompts
    # -----------------------------------------------------------------

    def _classification_system_message(self) -> str:
        actions = "|".join(action.value for action in ActionType)
        return f"""### Role
You are a customer support analyst. Decide the single best action for one inbound support email.

### Actions
- refund: the customer asks for their money back
- help_response: the customer needs help using the product
- general_info: the customer asks a general question about the product, pricing or policies
- escalate: a human must handle this (legal threats, executive complaints, anything you are unsure about)

### Output Requirements
Return ONLY a JSON object (no backticks, no prose) with these keys:
{{
  "action_type": "{actions}",
  "confidence": 0.0-1.0,
  "reasoning": "why this action was chosen",
  "suggested_response": "plain-text draft reply to the customer",
  "escalation_reason": "if escalating, why; otherwise null",
  "refund_amount": "if refund, amount in cents as an integer; otherwise null",
  "sentiment": -1.0-1.0,
  "category": "short topic label",
  "knowledge_used": ["knowledge categories that were relevant"]
}}"""

    def _message_block(self, message: InboundMessage) -> str:
        return f"EMAIL:\nFrom: {message.sender}\nSubject: {message.subject}\nBody:\n{message.body}"

    def _knowledge_block(self, knowledge: list[KnowledgeResult] | None) -> str:
        if not knowledge:
            return ""
        data = [
            {
                "category": result.category,
                "items": [
                    {"path": item.path, "content": item.content}
                    for item in result.items[:MAX_KNOWLEDGE_ITEMS]
                ],
            }
            for result in knowledge
        ]
        return f"\n\nKNOWLEDGE BASE:\n{json.dumps(data, indent=2)}"

    def _context_block(self, context: RequestContext | None) -> str:
        if context is None:
            return ""
        return f"\n\nUSER CONTEXT:\n{json.dumps(context.to_prompt_dict(), indent=2, default=str)}"

    def _build_classification_message(
        self,
        message: InboundMessage,
        context: RequestContext | None,
        knowledge: list[KnowledgeResult] | None,
    ) -> str:
        return (
            self._message_block(message)
            + self._context_block(context)
            + self._knowledge_block(knowledge)
            + "\n\nAnalyze the email and respond with JSON only."
        )

    def _response_system_message(self) -> str:
        return f"""You are a professional customer support agent.

RESPONSE GUIDELINES:
- Be professional and helpful
- NO markdown formatting (no *, **, #, etc.)
- Reply as part of the existing email thread
- Reference specific account data when available
- Provide actionable solutions
- Sign as "{self.signature}"

Write the email body only, as plain text."""

    # -----------------------------------------------------------------
    # OpenAI transport
    # -----------------------------------------------------------------

    async def _call_openai_with_retry(
        self, system_message: str, user_message: str, json_mode: bool
    ) -> str:
        """Call OpenAI API with retry logic for transient failures."""
        last_error = None
        extra: dict[str, Any] = {"response_format": {"type": "json_object"}} if json_mode else {}

        for attempt in range(self.max_retries):
            try:
                logger.debug(
                    "Calling OpenAI API",
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    model=self.model,
                )

                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system_message},
                        {"role": "user", "content": user_message},
                    ],
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                    **extra,
                )

                if not response.choices or not response.choices[0].message.content:
                    raise ClassificationError("Empty response from OpenAI API")

                result = response.choices[0].message.content.strip()
                logger.info(
                    "OpenAI API call successful",
                    attempt=attempt + 1,
                    response_length=len(result),
                    usage_tokens=response.usage.total_tokens if response.usage else 0,
                )
                return result

            except openai.RateLimitError as e:
                last_error = e
                wait_time = min(2**attempt, 30)
                logger.warning(
                    "OpenAI rate limit hit, retrying",
                    attempt=attempt + 1,
                    wait_time=wait_time,
                    error=str(e),
                )
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(wait_time)

            except openai.APITimeoutError as e:
                last_error = e
                logger.warning("OpenAI API timeout, retrying", attempt=attempt + 1, error=str(e))

            except openai.APIError as e:
                last_error = e
                # Don't retry on client errors (4xx)
                status_code = getattr(e, "status_code", None)
                if status_code is not None and 400 <= status_code < 500:
                    logger.error("OpenAI client error (not retrying)", error=str(e))
                    break
                logger.warning("OpenAI API error, retrying", attempt=attempt + 1, error=str(e))

            except ClassificationError as e:
                last_error = e
                logger.warning("OpenAI returned no content, retrying", attempt=attempt + 1)

        logger.error(
            "OpenAI API call failed after all retries",
            max_retries=self.max_retries,
            final_error=str(last_error),
        )
        raise ClassificationError(f"OpenAI API failed: {last_error}") from last_error

    # -----------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------

    def _parse_classification(self, raw_result: str) -> ClassificationResult:
        try:
            payload = json.loads(raw_result)
        except json.JSONDecodeError as e:
            logger.error("Oracle returned invalid JSON", error=str(e), raw_result=raw_result[:200])
            raise ClassificationError("Oracle returned invalid JSON") from e

        if not isinstance(payload, dict):
            raise ClassificationError("Oracle response is not a JSON object")

        try:
            verdict = OracleVerdict.model_validate(payload)
        except PydanticValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            logger.error("Oracle response violates schema", fields=fields)
            raise ClassificationError(f"Oracle response violates schema: {fields}") from e

        return ClassificationResult(
            action_type=verdict.action_type.strip().lower(),
            confidence=verdict.confidence,
            reasoning=verdict.reasoning,
            suggested_response=verdict.suggested_response,
            refund_amount=verdict.refund_amount,
            escalation_reason=verdict.escalation_reason,
            sentiment=verdict.sentiment,
            category=verdict.category,
            knowledge_used=tuple(verdict.knowledge_used),
        )

    def fallback_result(self, message: InboundMessage, diagnostic: str) -> ClassificationResult:
        return ClassificationResult(
            action_type=ActionType.ESCALATE.value,
            confidence=FALLBACK_CONFIDENCE,
            reasoning=FALLBACK_REASONING,
            suggested_response=acknowledgement_reply(message.subject, self.signature),
            escalation_reason=f"AI analysis error: {diagnostic}",
        )

    async def classify(
        self,
        message: InboundMessage,
        context: RequestContext | None = None,
        knowledge: list[KnowledgeResult] | None = None,
    ) -> ClassificationResult:
        """
        Classify one support message.

        Any transport failure, timeout, invalid JSON or schema violation
        produces the fixed escalation fallback instead of raising.
        """
        try:
            raw = await self._call_openai_with_retry(
                self._classification_system_message(),
                self._build_classification_message(message, context, knowledge),
                json_mode=True,
            )
            result = self._parse_classification(raw)
        except ClassificationError as e:
            logger.warning("Classification degraded to fallback", error=str(e))
            return self.fallback_result(message, str(e))
        except Exception as e:
            logger.error(
                "Unexpected classification failure",
                error=str(e),
                error_type=type(e).__name__,
            )
            return self.fallback_result(message, str(e))

        logger.info(
            "Message classified",
            action_type=result.action_type,
            confidence=result.confidence,
            sentiment=result.sentiment,
        )
        return result

    async def generate_response(
        self,
        message: InboundMessage,
        classification: ClassificationResult,
        context: RequestContext | None = None,
        knowledge: list[KnowledgeResult] | None = None,
        facts: dict[str, Any] | None = None,
    ) -> str:
        """
        Draft the plain-text reply for a help, info or refund-confirmation message.

        `facts` carries outcomes the reply must state (e.g. a processed refund
        amount). Falls back to a fixed holding reply on any failure.
        """
        plan = classification.to_dict()
        if facts:
            plan.update(facts)

        user_message = (
            self._message_block(message)
            + f"\n\nACTION PLAN:\n{json.dumps(plan, indent=2, default=str)}"
            + self._context_block(context)
            + self._knowledge_block(knowledge)
            + "\n\nGenerate a professional email response (plain text only, no markdown):"
        )

        try:
            reply = await self._call_openai_with_retry(
                self._response_system_message(), user_message, json_mode=False
            )
        except Exception as e:
            logger.warning("Response drafting failed, using holding reply", error=str(e))
            return holding_reply(message.subject, self.signature)

        logger.info("Response generated", length=len(reply))
        return reply
