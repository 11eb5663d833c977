"""
Gmail REST messaging for the support mailbox.
Lists candidate messages, fetches and parses them, sends threaded plain-text
replies and marks messages processed. Authenticates with a long-lived
refresh token exchanged for short-lived access tokens.
"""

import asyncio
import base64
from datetime import UTC, datetime, timedelta
from email.mime.text import MIMEText

import httpx

from support_agent.infrastructure.observability.logging import get_logger
from support_agent.models.domain.gmail_domain import GmailMessage, reply_subject, strip_markdown
from support_agent.models.domain.support_domain import InboundMessage

logger = get_logger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"
GMAIL_USER_ID = "me"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
TOKEN_EXPIRY_SKEW = timedelta(seconds=60)


class GmailApiError(Exception):
    """Custom exception for Gmail API and token errors."""

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


class GoogleTokenProvider:
    """Exchanges the mailbox refresh token for access tokens and caches them until expiry."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        client: httpx.AsyncClient,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._client = client
        self._access_token: str | None = None
        self._expires_at: datetime | None = None
        self._lock = asyncio.Lock()

    def _is_fresh(self) -> bool:
        return bool(
            self._access_token
            and self._expires_at
            and datetime.now(UTC) < self._expires_at - TOKEN_EXPIRY_SKEW
        )

    async def get_access_token(self) -> str:
        if self._is_fresh():
            return self._access_token

        async with self._lock:
            if self._is_fresh():
                return self._access_token
            await self._refresh()
            return self._access_token

    async def _refresh(self) -> None:
        data = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": self._refresh_token,
            "grant_type": "refresh_token",
        }

        try:
            response = await self._client.post(GOOGLE_TOKEN_URL, data=data)
        except httpx.RequestError as e:
            logger.error("Network error during token refresh", error=str(e))
            raise GmailApiError(f"Network error during token refresh: {e}") from e

        if not response.is_success:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            error_code = error_data.get("error", "unknown_error")
            logger.error(
                "Google token refresh failed",
                status_code=response.status_code,
                error_code=error_code,
            )
            raise GmailApiError(
                f"Token refresh failed: {error_data.get('error_description', error_code)}",
                error_code=error_code,
                status_code=response.status_code,
                response_data=error_data,
            )

        payload = response.json()
        if not payload.get("access_token"):
            raise GmailApiError("Token refresh returned no access token")

        self._access_token = payload["access_token"]
        self._expires_at = datetime.now(UTC) + timedelta(seconds=int(payload.get("expires_in", 3600)))
        logger.info("Gmail access token refreshed", expires_at=self._expires_at.isoformat())


class GmailService:
    """
    Messaging collaborator backed by the Gmail REST API.

    Handles HTTP requests, authentication, error mapping and retry logic for
    one mailbox. Parsing is delegated to gmail_domain.
    """

    def __init__(
        self,
        mailbox: str,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        client: httpx.AsyncClient | None = None,
    ):
        self.mailbox = mailbox
        self._client = client or self._create_client()
        self._tokens = GoogleTokenProvider(client_id, client_secret, refresh_token, self._client)

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request_with_retry(
        self, method: str, url: str, retryable: bool = True, **kwargs
    ) -> httpx.Response:
        """
        Execute an HTTP request with retry and backoff.

        Requests made with retryable=False are attempted once. Sending is not
        idempotent on the Gmail side, so a retried send could deliver twice.
        """
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
                        "Gmail API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if not retryable or attempt >= MAX_RETRIES:
                    raise GmailApiError(f"Gmail API unreachable: {e}") from e
                backoff = BACKOFF_FACTOR * (2 ** (attempt - 1))
                logger.debug(
                    "Gmail API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Gmail API retry loop exhausted")

    async def _auth_headers(self) -> dict:
        access_token = await self._tokens.get_access_token()
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    def _handle_api_response(self, response: httpx.Response, operation: str) -> dict:
        """
        Validate a Gmail API response.

        Raises:
            GmailApiError: If the response carries an error status or invalid JSON
        """
        if response.is_success:
            try:
                return response.json() if response.text else {}
            except ValueError as e:
                logger.error(f"Failed to parse Gmail API {operation} response", error=str(e))
                raise GmailApiError(f"Invalid response format: {e}") from e

        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            error_data = {}

        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        error_code = str(error_info.get("code", response.status_code))
        error_message = error_info.get("message", f"HTTP {response.status_code}")

        logger.error(
            f"Gmail API {operation} failed",
            status_code=response.status_code,
            error_code=error_code,
            error_message=error_message,
        )
        raise GmailApiError(
            f"Gmail {operation} failed: {error_message}",
            error_code=error_code,
            status_code=response.status_code,
            response_data=error_data,
        )

    async def list_candidates(self, query: str, max_results: int = 50) -> list[str]:
        """
        List ids of messages matching a Gmail search query, oldest first.

        Raises:
            GmailApiError: If the listing fails
        """
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages"
        params = {"q": query, "maxResults": min(max_results, 500)}

        response = await self._request_with_retry(
            "GET", url, headers=await self._auth_headers(), params=params
        )
        data = self._handle_api_response(response, "list_messages")

        # Gmail lists newest first
        message_ids = [msg["id"] for msg in data.get("messages", [])]
        message_ids.reverse()
        logger.info("Candidate messages listed", query=query, count=len(message_ids))
        return message_ids

    async def get_message(self, message_id: str) -> InboundMessage:
        """
        Fetch and parse one message.

        Raises:
            GmailApiError: If the message cannot be fetched or parsed
        """
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages/{message_id}"
        response = await self._request_with_retry(
            "GET", url, headers=await self._auth_headers(), params={"format": "full"}
        )
        data = self._handle_api_response(response, "get_message")

        try:
            return GmailMessage(data).to_inbound_message()
        except (KeyError, ValueError) as e:
            raise GmailApiError(f"Unparsable Gmail message {message_id}: {e}") from e

    async def send(
        self,
        to: str,
        subject: str,
        body: str,
        in_reply_to: InboundMessage | None = None,
    ) -> str:
        """
        Send a plain-text email, threaded to `in_reply_to` when given.

        Markdown is stripped from the body. Replies get a "Re:" subject, the
        In-Reply-To and References headers and the original threadId.

        Returns:
            str: Gmail id of the sent message

        Raises:
            GmailApiError: If sending fails
        """
        msg = MIMEText(strip_markdown(body), "plain", "utf-8")
        msg["To"] = to
        msg["From"] = self.mailbox

        send_data: dict = {}
        if in_reply_to is not None:
            msg["Subject"] = reply_subject(in_reply_to.subject)
            if in_reply_to.rfc822_message_id:
                msg["In-Reply-To"] = in_reply_to.rfc822_message_id
                msg["References"] = in_reply_to.rfc822_message_id
            if in_reply_to.thread_id:
                send_data["threadId"] = in_reply_to.thread_id
        else:
            msg["Subject"] = subject

        send_data["raw"] = base64.urlsafe_b64encode(msg.as_bytes()).decode("utf-8")

        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages/send"
        logger.info("Sending Gmail message", to=to, is_reply=in_reply_to is not None)

        response = await self._request_with_retry(
            "POST", url, retryable=False, headers=await self._auth_headers(), json=send_data
        )
        data = self._handle_api_response(response, "send_message")

        logger.info("Message sent successfully", sent_id=data.get("id"))
        return data.get("id", "")

    async def mark_processed(self, message_id: str) -> None:
        """Acknowledge a message by removing its UNREAD label."""
        url = f"{GMAIL_API_BASE_URL}/users/{GMAIL_USER_ID}/messages/{message_id}/modify"
        response = await self._request_with_retry(
            "POST",
            url,
            headers=await self._auth_headers(),
            json={"removeLabelIds": ["UNREAD"]},
        )
        self._handle_api_response(response, "modify_message")
        logger.info("Message marked processed", message_id=message_id)
