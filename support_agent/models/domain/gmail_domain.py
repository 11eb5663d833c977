# support_agent/models/domain/gmail_domain.py
"""
Gmail Domain Models
Parses Gmail API message resources into the pipeline's InboundMessage and
holds the content rules applied to inbound and outbound mail.
"""

import base64
import re
from datetime import UTC, datetime

from support_agent.models.domain.support_domain import InboundMessage


class GmailMessage:
    """Domain model for a Gmail API message resource (format=full)."""

    def __init__(self, data: dict):
        self.id = data.get("id")
        self.thread_id = data.get("threadId")
        self.label_ids = data.get("labelIds", [])
        self.snippet = data.get("snippet", "")
        self.internal_date = data.get("internalDate")
        self.payload = data.get("payload", {})

        self._parse_headers()
        self._parse_body()

    def _parse_headers(self):
        headers = self.payload.get("headers", [])
        self.headers = {h["name"].lower(): h["value"] for h in headers}

        self.subject = self.headers.get("subject", "(No Subject)")
        self.from_header = self.headers.get("from", "")
        self.sender = parse_email_address(self.from_header)
        self.reply_to = parse_email_address(self.headers.get("reply-to", ""))
        self.message_id = self.headers.get("message-id", "")

    def _parse_body(self):
        self.body_text = ""
        self.body_html = ""

        if not self.payload:
            return

        if self.payload.get("body", {}).get("data"):
            decoded = _decode_base64_data(self.payload["body"]["data"])
            if self.payload.get("mimeType") == "text/html":
                self.body_html = decoded
            else:
                self.body_text = decoded
        elif self.payload.get("parts"):
            self._parse_multipart_body(self.payload["parts"])

    def _parse_multipart_body(self, parts: list):
        for part in parts:
            mime_type = part.get("mimeType", "")
            body_data = part.get("body", {}).get("data")

            if mime_type == "text/plain" and body_data and not self.body_text:
                self.body_text = _decode_base64_data(body_data)
            elif mime_type == "text/html" and body_data and not self.body_html:
                self.body_html = _decode_base64_data(body_data)
            elif mime_type.startswith("multipart/"):
                self._parse_multipart_body(part.get("parts", []))

    def get_received_datetime(self) -> datetime | None:
        """Get received datetime from internal date (epoch milliseconds)."""
        if self.internal_date:
            try:
                return datetime.fromtimestamp(int(self.internal_date) / 1000, tz=UTC)
            except (ValueError, OSError):
                pass
        return None

    def get_body(self) -> str:
        """Plain-text body, falling back to stripped HTML and then the snippet."""
        if self.body_text.strip():
            return self.body_text.strip()
        if self.body_html:
            return html_to_text(self.body_html)
        return self.snippet

    def to_inbound_message(self) -> InboundMessage:
        """Convert to the immutable value the pipeline works on."""
        if not self.id:
            raise ValueError("Gmail message has no id")

        # Replies go to Reply-To when the sender set one
        address = self.reply_to["email"] or self.sender["email"]

        return InboundMessage(
            id=self.id,
            sender=self.from_header,
            sender_address=address.lower(),
            subject=self.subject,
            body=self.get_body(),
            thread_id=self.thread_id,
            rfc822_message_id=self.message_id or None,
            received_at=self.get_received_datetime(),
        )


def parse_email_address(address_str: str) -> dict[str, str]:
    """Parse "John Doe <john@example.com>" or "john@example.com" into name and email."""
    if not address_str:
        return {"name": "", "email": ""}

    if "<" in address_str and ">" in address_str:
        name_part = address_str.split("<")[0].strip().strip('"')
        email_part = address_str.split("<")[1].split(">")[0].strip()
        return {"name": name_part, "email": email_part}
    return {"name": "", "email": address_str.strip()}


def _decode_base64_data(data: str) -> str:
    """Decode Gmail's URL-safe base64 body data."""
    try:
        decoded_bytes = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
        return decoded_bytes.decode("utf-8", errors="ignore")
    except (ValueError, TypeError):
        return ""


_TAG_RE = re.compile(r"<[^>]+>")
_BREAK_RE = re.compile(r"<\s*(br|/p|/div)\s*/?>", re.IGNORECASE)


def html_to_text(html: str) -> str:
    text = _BREAK_RE.sub("\n", html)
    text = _TAG_RE.sub("", text)
    text = re.sub(r"[ \t]+", " ", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def is_automated(message: InboundMessage, patterns: list[str]) -> bool:
    """True when sender or subject matches an automated-mail pattern."""
    sender = message.sender.lower()
    subject = message.subject.lower()
    return any(p in sender or p in subject for p in (p.lower() for p in patterns))


def strip_markdown(text: str) -> str:
    """
    Remove markdown formatting so replies read as plain professional email.

    Headers, emphasis and inline code lose their markers, links keep their
    text, fenced code becomes "[code block]" and list bullets become "•".
    """
    if not text:
        return text

    clean = re.sub(r"```[\s\S]*?```", "[code block]", text)
    clean = re.sub(r"^#{1,6}\s+", "", clean, flags=re.MULTILINE)
    clean = re.sub(r"\*\*(.*?)\*\*", r"\1", clean)
    clean = re.sub(r"\*(.*?)\*", r"\1", clean)
    clean = re.sub(r"`([^`]+)`", r"\1", clean)
    clean = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", clean)
    clean = re.sub(r"^[ \t]*[-*+]\s+", "• ", clean, flags=re.MULTILINE)
    clean = re.sub(r"\n{3,}", "\n\n", clean)
    return clean.strip()


def reply_subject(subject: str) -> str:
    """Prefix a subject with a single "Re:"."""
    base = re.sub(r"^\s*re:\s*", "", subject or "", flags=re.IGNORECASE)
    return f"Re: {base}"
