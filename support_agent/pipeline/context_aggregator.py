"""
Assembles the RequestContext for a sender.

Reads run concurrently in two phases: identity (account + billing customer),
then everything keyed by them. Any read failure degrades the context to
identity_found=False with a diagnostic instead of failing the run.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from support_agent.config import RefundRules
from support_agent.infrastructure.observability.logging import get_logger
from support_agent.models.domain.support_domain import (
    AccountRecord,
    AssetUsage,
    BillingProfile,
    ProjectRecord,
    RefundEligibility,
    RequestContext,
    UsageFacts,
)
from support_agent.pipeline.errors import ContextLookupError

logger = get_logger(__name__)


class AccountLookup(Protocol):
    async def find_by_address(self, email: str) -> AccountRecord | None: ...

    async def list_projects(self, user_id: str) -> list[ProjectRecord]: ...

    async def usage_summary(self, user_id: str) -> AssetUsage: ...


class BillingLookup(Protocol):
    async def find_customer(self, email: str) -> dict[str, Any] | None: ...

    async def list_subscriptions(self, customer_id: str) -> list[dict[str, Any]]: ...

    async def billing_history(self, customer_id: str) -> dict[str, list[dict[str, Any]]]: ...


async def _lookup(source: str, call: Awaitable[Any]) -> Any:
    try:
        return await call
    except Exception as e:
        raise ContextLookupError(f"{source} lookup failed: {e}", source=source) from e


async def _gather_all(*calls: Awaitable[Any]) -> list[Any]:
    """Wait for every read, then surface the first failure."""
    results = await asyncio.gather(*calls, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return list(results)


async def _none() -> None:
    return None


class ContextAggregator:
    def __init__(
        self,
        accounts: AccountLookup,
        billing: BillingLookup,
        refund_rules: RefundRules,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self._accounts = accounts
        self._billing = billing
        self._refund_rules = refund_rules
        self._clock = clock

    async def build_context(self, sender_address: str) -> RequestContext:
        """Never raises; failures come back as a degraded context."""
        try:
            context = await self._build(sender_address)
        except ContextLookupError as e:
            logger.warning("Context lookup failed, continuing degraded", source=e.source, error=str(e))
            return RequestContext.degraded(sender_address, str(e))
        except Exception as e:
            logger.error(
                "Unexpected context failure, continuing degraded",
                error=str(e),
                error_type=type(e).__name__,
            )
            return RequestContext.degraded(sender_address, f"context assembly failed: {e}")

        logger.info(
            "Context built",
            identity_found=context.identity_found,
            has_billing=context.billing is not None,
        )
        return context

    async def _build(self, email: str) -> RequestContext:
        account, customer = await _gather_all(
            _lookup("accounts", self._accounts.find_by_address(email)),
            _lookup("billing", self._billing.find_customer(email)),
        )

        if account is None:
            return RequestContext.degraded(email, "account not found")

        customer_id = customer.get("id") if customer else None
        projects, usage, subscriptions, history = await _gather_all(
            _lookup("accounts", self._accounts.list_projects(account.id)),
            _lookup("accounts", self._accounts.usage_summary(account.id)),
            _lookup("billing", self._billing.list_subscriptions(customer_id)) if customer_id else _none(),
            _lookup("billing", self._billing.billing_history(customer_id)) if customer_id else _none(),
        )

        facts = UsageFacts(
            compliant_assets=usage.compliant_assets,
            completed_projects=sum(1 for project in projects if project.status == "completed"),
            days_since_signup=self._days_since(account.created_at),
        )

        billing = None
        if customer_id:
            history = history or {}
            billing = BillingProfile(
                customer_id=customer_id,
                subscriptions=tuple(subscriptions or ()),
                charges=tuple(history.get("charges", ())),
                invoices=tuple(history.get("invoices", ())),
            )

        return RequestContext(
            email=email,
            identity_found=True,
            account=account,
            projects=tuple(projects),
            usage=facts,
            refund_eligibility=self._eligibility(facts),
            billing=billing,
        )

    def _days_since(self, created_at: datetime) -> int:
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        return max((self._clock() - created_at).days, 0)

    def _eligibility(self, facts: UsageFacts) -> RefundEligibility:
        rules = self._refund_rules
        eligible = (
            facts.days_since_signup <= rules.max_days_since_signup
            and facts.completed_projects <= rules.max_completed_projects
            and facts.compliant_assets < rules.max_compliant_assets
        )
        if eligible:
            return RefundEligibility(eligible=True, reason="Meets auto-approval criteria")
        return RefundEligibility(
            eligible=False,
            reason=(
                f"Exceeds limits: {facts.days_since_signup}d since signup, "
                f"{facts.completed_projects} projects, {facts.compliant_assets} compliant assets"
            ),
        )
