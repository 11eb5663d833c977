"""
Stripe billing collaborator.
Customer lookup, subscriptions, billing history and refunds over the Stripe
REST API (form-encoded requests, secret-key bearer auth).
"""

import asyncio
from dataclasses import dataclass
from typing import Any

import httpx

from support_agent.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

STRIPE_API_BASE_URL = "https://api.stripe.com/v1"

REQUEST_TIMEOUT = 20  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 1
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
HISTORY_LIMIT = 10


class BillingProviderError(Exception):
    """Custom exception for Stripe API errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}


class NoRefundableChargeError(BillingProviderError):
    """The customer has no succeeded, unrefunded charge to refund against."""


@dataclass(frozen=True, slots=True)
class RefundReceipt:
    refund_id: str
    charge_id: str
    amount: int
    status: str


def refund_idempotency_key(message_id: str) -> str:
    """Stripe idempotency key for the refund triggered by one message."""
    return f"refund-{message_id}"


class BillingProvider:
    """Stripe REST client scoped to what the support pipeline needs."""

    def __init__(self, secret_key: str, client: httpx.AsyncClient | None = None):
        self._secret_key = secret_key
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        return httpx.AsyncClient(base_url=STRIPE_API_BASE_URL, timeout=timeout, limits=limits)

    async def close(self) -> None:
        await self._client.aclose()

    def _get_auth_headers(self, idempotency_key: str | None = None) -> dict:
        headers = {"Authorization": f"Bearer {self._secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Execute an HTTP request with retry and backoff.

        POSTs are only retried when they carry an Idempotency-Key, so a
        retried refund can never be applied twice.
        """
        headers = kwargs.get("headers") or {}
        retryable = method == "GET" or "Idempotency-Key" in headers

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if (
                    retryable
                    and response.status_code in RETRY_STATUS_CODES
                    and attempt < MAX_RETRIES
                ):
                    backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                    logger.debug(
                        "Stripe API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if not retryable or attempt >= MAX_RETRIES:
                    raise BillingProviderError(f"Stripe API unreachable: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug("Stripe API request error, retrying", attempt=attempt, error=str(e))
                await asyncio.sleep(backoff)
        raise RuntimeError("Stripe API retry loop exhausted")

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Validate a Stripe API response.

        Raises:
            BillingProviderError: If the response carries an error status
        """
        if response.is_success:
            try:
                return response.json()
            except ValueError as e:
                raise BillingProviderError(f"Invalid Stripe response format: {e}") from e

        try:
            error_data = response.json()
        except ValueError:
            error_data = {}

        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        error_code = error_info.get("code") or error_info.get("type") or "unknown"

        logger.error(
            f"Stripe API {operation} failed",
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_info.get("message"),
        )
        raise BillingProviderError(
            f"Stripe {operation} failed: {error_info.get('message', f'HTTP {response.status_code}')}",
            error_code=error_code,
            status_code=response.status_code,
            response_data=error_data,
        )

    async def _get(self, path: str, params: dict, operation: str) -> dict:
        response = await self._request_with_retry(
            "GET", path, headers=self._get_auth_headers(), params=params
        )
        return self._handle_api_response(response, operation)

    async def find_customer(self, email: str) -> dict[str, Any] | None:
        """Return the first Stripe customer with this email, or None."""
        data = await self._get(
            "/customers/search",
            {"query": f"email:'{email}'", "limit": 1},
            "find_customer",
        )
        customers = data.get("data", [])
        if not customers:
            logger.info("Customer not found in billing provider")
            return None
        return customers[0]

    async def list_subscriptions(self, customer_id: str) -> list[dict[str, Any]]:
        data = await self._get(
            "/subscriptions",
            {"customer": customer_id, "status": "all"},
            "list_subscriptions",
        )
        return data.get("data", [])

    async def billing_history(
        self, customer_id: str, limit: int = HISTORY_LIMIT
    ) -> dict[str, list[dict[str, Any]]]:
        """Recent charges and invoices, newest first."""
        charges, invoices = await asyncio.gather(
            self._get("/charges", {"customer": customer_id, "limit": limit}, "list_charges"),
            self._get("/invoices", {"customer": customer_id, "limit": limit}, "list_invoices"),
        )
        return {"charges": charges.get("data", []), "invoices": invoices.get("data", [])}

    async def issue_refund(
        self,
        customer_id: str,
        amount: int,
        reason: str,
        idempotency_key: str | None = None,
    ) -> RefundReceipt:
        """
        Refund `amount` (minor units) against the latest succeeded, unrefunded charge.

        Raises:
            NoRefundableChargeError: If no such charge exists
            BillingProviderError: If Stripe rejects the refund
        """
        logger.info("Processing refund", customer_id=customer_id, amount=amount, reason=reason[:200])

        history = await self._get(
            "/charges", {"customer": customer_id, "limit": HISTORY_LIMIT}, "list_charges"
        )
        charge = next(
            (
                c
                for c in history.get("data", [])
                if c.get("status") == "succeeded" and not c.get("refunded")
            ),
            None,
        )
        if charge is None:
            raise NoRefundableChargeError(
                "No refundable charges found for customer", error_code="no_refundable_charge"
            )

        # Parameters must be identical for every request sharing an idempotency key
        form = {
            "charge": charge["id"],
            "amount": amount,
            "reason": "requested_by_customer",
            "metadata[agent_processed]": "true",
        }
        if idempotency_key:
            form["metadata[support_reference]"] = idempotency_key
        response = await self._request_with_retry(
            "POST",
            "/refunds",
            headers=self._get_auth_headers(idempotency_key),
            data=form,
        )
        data = self._handle_api_response(response, "create_refund")

        receipt = RefundReceipt(
            refund_id=data.get("id", ""),
            charge_id=charge["id"],
            amount=int(data.get("amount", amount)),
            status=data.get("status", "unknown"),
        )
        logger.info("Refund processed", refund_id=receipt.refund_id, amount=receipt.amount)
        return receipt
