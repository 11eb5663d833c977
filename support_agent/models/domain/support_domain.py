"""
Support Domain Models
Typed values passed between the stages of one pipeline run.
Every optional field documents when it is present.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class ActionType(StrEnum):
    REFUND = "refund"
    HELP_RESPONSE = "help_response"
    ESCALATE = "escalate"
    GENERAL_INFO = "general_info"


class Priority(StrEnum):
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """One candidate support message. `id` is the idempotency key."""

    id: str
    sender: str  # raw From header, e.g. "Jane Doe <jane@example.com>"
    sender_address: str  # bare lower-cased address
    subject: str
    body: str
    thread_id: str | None = None
    rfc822_message_id: str | None = None  # Message-ID header, used for threading
    received_at: datetime | None = None

    def searchable_text(self) -> str:
        return f"{self.subject} {self.body}"


@dataclass(frozen=True, slots=True)
class AccountRecord:
    id: str
    email: str
    name: str | None
    created_at: datetime
    subscription_status: str | None = None
    subscription_plan: str | None = None


@dataclass(frozen=True, slots=True)
class ProjectRecord:
    id: str
    name: str
    status: str
    created_at: datetime | None = None
    completed_at: datetime | None = None
    asset_count: int = 0


@dataclass(frozen=True, slots=True)
class AssetUsage:
    compliant_assets: int
    breakdown: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True, slots=True)
class UsageFacts:
    compliant_assets: int
    completed_projects: int
    days_since_signup: int


@dataclass(frozen=True, slots=True)
class RefundEligibility:
    eligible: bool
    reason: str


@dataclass(frozen=True, slots=True)
class BillingProfile:
    """Billing facts for a customer found in the billing provider."""

    customer_id: str
    subscriptions: tuple[dict[str, Any], ...] = ()
    charges: tuple[dict[str, Any], ...] = ()
    invoices: tuple[dict[str, Any], ...] = ()

    @property
    def total_paid(self) -> int:
        """Sum of succeeded charges, in minor currency units."""
        return sum(
            int(charge.get("amount", 0))
            for charge in self.charges
            if charge.get("status") == "succeeded"
        )

    @property
    def has_disputes(self) -> bool:
        return any(charge.get("disputed") for charge in self.charges)


@dataclass(frozen=True, slots=True)
class RequestContext:
    """
    Aggregated, possibly degraded facts about a sender.

    When identity_found is False, account, usage, refund_eligibility and
    billing are None rather than zero-valued, and diagnostic says why.
    billing is also None when the account exists but no billing customer does.
    """

    email: str
    identity_found: bool
    account: AccountRecord | None = None
    projects: tuple[ProjectRecord, ...] = ()
    usage: UsageFacts | None = None
    refund_eligibility: RefundEligibility | None = None
    billing: BillingProfile | None = None
    diagnostic: str | None = None

    @classmethod
    def degraded(cls, email: str, diagnostic: str) -> "RequestContext":
        return cls(email=email, identity_found=False, diagnostic=diagnostic)

    def to_prompt_dict(self) -> dict[str, Any]:
        """JSON-friendly view for prompts and escalation notices."""
        data = asdict(self)
        if self.billing is not None:
            data["billing"]["total_paid"] = self.billing.total_paid
            data["billing"]["has_disputes"] = self.billing.has_disputes
        return data


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    """
    Oracle verdict. action_type holds the raw string so unknown actions reach
    the executor; refund_amount is in minor units and present only when the
    oracle supplied a parseable amount.
    """

    action_type: str
    confidence: float
    reasoning: str
    suggested_response: str = ""
    refund_amount: int | None = None
    escalation_reason: str | None = None
    sentiment: float | None = None
    category: str | None = None
    knowledge_used: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class EscalationDecision:
    escalate: bool
    reasons: tuple[str, ...] = ()
    priority: Priority = Priority.MEDIUM

    def __post_init__(self):
        if self.escalate != bool(self.reasons):
            raise ValueError("escalation reasons must be non-empty exactly when escalating")


@dataclass(frozen=True, slots=True)
class RefundDecision:
    auto_approve: bool
    amount: int  # minor currency units
    reasoning: str
    conditions: dict[str, bool] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    action_taken: str
    details: dict[str, Any]
    success: bool
    delivery_errors: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ActivityRecord:
    activity_type: str
    details: dict[str, Any]
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class KnowledgeMatch:
    path: str
    content: str
    relevance: float


@dataclass(frozen=True, slots=True)
class KnowledgeResult:
    category: str
    items: tuple[KnowledgeMatch, ...]
