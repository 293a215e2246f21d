from __future__ import annotations

import email
import email.message
import email.policy
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.header import decode_header, make_header
from email.utils import getaddresses, parsedate_to_datetime

from helpdesk_sync.core.logging import log_debug


SUBJECT_PLACEHOLDER = "(no subject)"
BODY_PLACEHOLDER = "Email body unavailable."
SENDER_PLACEHOLDER = "unknown@invalid"
_MAX_BODY_BYTES = 5 * 1024 * 1024

_SUBJECT_PREFIX_PATTERN = re.compile(r"^\s*(?:(?:re|fw|fwd|aw|res|enc)\s*:\s*|\[external\]\s*)", re.IGNORECASE)
# Only the token the helpdesk writes into outgoing subjects.
_TICKET_TOKEN_PATTERN = re.compile(r"\[#(\d+)\]")
_MESSAGE_ID_PATTERN = re.compile(r"<[^<>\s]+>")
_HTML_TAG_PATTERN = re.compile(r"<[^>]+>")

_PRIORITY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("URGENT", ("urgent", "critical", "emergency", "down", "outage")),
    ("HIGH", ("important", "error", "not working", "broken", "failure")),
    ("LOW", ("question", "suggestion", "doubt", "feature request")),
)
_AUTO_REPLY_SUBJECT_MARKERS = (
    "auto-reply",
    "automatic reply",
    "autoreply",
    "out of office",
    "out-of-office",
    "delivery status notification",
    "undeliverable",
    "mail delivery failed",
)
_CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Technical Support", ("error", "bug", "issue", "failure", "not working", "broken", "crash")),
    ("Request", ("request", "need", "would like", "could you", "please")),
    ("Question", ("question", "how", "where", "when", "why", "what", "help")),
    ("Complaint", ("complaint", "unsatisfied", "terrible", "horrible", "unacceptable")),
    ("Praise", ("praise", "excellent", "great job", "thank you", "thanks")),
)
_TAG_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("windows", ("windows", "win10", "win11")),
    ("mac", ("mac", "macos", "apple")),
    ("linux", ("linux", "ubuntu", "debian")),
    ("mobile", ("mobile", "android", "ios", "iphone")),
    ("email", ("email", "e-mail", "outlook", "gmail", "thunderbird")),
    ("internet", ("internet", "wifi", "wi-fi", "network", "vpn")),
    ("printer", ("printer", "printing", "print")),
    ("software", ("software", "program", "application", "app")),
)
_SPAM_INDICATORS = (
    "viagra",
    "casino",
    "lottery",
    "winner",
    "congratulations",
    "click here",
    "free money",
    "urgent business",
    "inheritance",
    "million dollars",
    "act now",
    "limited time",
)
_SPAM_THRESHOLD = 2


class ParseError(ValueError):
    """Raised when a raw message cannot be turned into an :class:`InboundMessage`."""


@dataclass
class InboundMessage:
    uid: int
    subject: str
    from_name: str
    from_address: str
    received_at: datetime
    text_body: str
    html_body: str | None = None
    message_id: str | None = None
    in_reply_to: str | None = None
    references: list[str] = field(default_factory=list)
    is_auto_reply: bool = False
    is_spam: bool = False
    priority: str = "MEDIUM"
    category: str | None = None
    tags: list[str] = field(default_factory=list)

    @property
    def body(self) -> str:
        return self.text_body or BODY_PLACEHOLDER

    @property
    def thread_ids(self) -> list[str]:
        """Message-IDs this message replies to, most specific first."""

        ids: list[str] = []
        if self.in_reply_to:
            ids.append(self.in_reply_to)
        for reference in reversed(self.references):
            if reference not in ids:
                ids.append(reference)
        return ids


def _decode_header_value(raw: str | None) -> str:
    if not raw:
        return ""
    try:
        return str(make_header(decode_header(str(raw)))).strip()
    except (LookupError, ValueError, UnicodeError):
        return str(raw).strip()


def clean_subject(subject: str | None) -> str:
    """Strip reply/forward prefixes and ``[External]`` tags from ``subject``."""

    if not subject:
        return ""
    cleaned = subject
    while True:
        stripped = _SUBJECT_PREFIX_PATTERN.sub("", cleaned, count=1)
        if stripped == cleaned:
            break
        cleaned = stripped
    return re.sub(r"\s+", " ", cleaned).strip()


def extract_ticket_number(subject: str | None) -> int | None:
    """Return the number in a ``[#123]`` token in ``subject``, if any.

    Bare ``#123`` is ignored: customers write invoice and order numbers that
    way.
    """

    if not subject:
        return None
    match = _TICKET_TOKEN_PATTERN.search(subject)
    return int(match.group(1)) if match else None


def _contains_keyword(text: str, keyword: str) -> bool:
    return re.search(rf"\b{re.escape(keyword)}\b", text) is not None


def classify_priority(subject: str, body: str) -> str:
    text = f"{subject}\n{body}".lower()
    for priority, keywords in _PRIORITY_KEYWORDS:
        if any(_contains_keyword(text, keyword) for keyword in keywords):
            return priority
    return "MEDIUM"


def detect_category(subject: str, body: str) -> str | None:
    text = f"{subject}\n{body}".lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(_contains_keyword(text, keyword) for keyword in keywords):
            return category
    return None


def extract_tags(subject: str, body: str) -> list[str]:
    text = f"{subject}\n{body}".lower()
    return [
        tag
        for tag, keywords in _TAG_KEYWORDS
        if any(_contains_keyword(text, keyword) for keyword in keywords)
    ]


def is_spam(message: email.message.Message, subject: str, body: str) -> bool:
    """Flag spam by the upstream filter verdict or by two or more indicator phrases."""

    if (message.get("X-Spam-Flag") or "").strip().upper() == "YES":
        return True
    text = f"{subject}\n{body}".lower()
    score = sum(1 for indicator in _SPAM_INDICATORS if indicator in text)
    return score >= _SPAM_THRESHOLD


def is_auto_reply(message: email.message.Message, subject: str = "") -> bool:
    auto_submitted = (message.get("Auto-Submitted") or "").strip().lower()
    if auto_submitted and auto_submitted != "no":
        return True
    if message.get("X-Autoreply") or message.get("X-Autorespond"):
        return True
    precedence = (message.get("Precedence") or "").strip().lower()
    if precedence in {"bulk", "junk", "auto_reply"}:
        return True
    lowered = subject.lower()
    return any(marker in lowered for marker in _AUTO_REPLY_SUBJECT_MARKERS)


def _parse_message_ids(raw: str | None) -> list[str]:
    if not raw:
        return []
    return _MESSAGE_ID_PATTERN.findall(str(raw))


def _parse_received_at(raw: str | None) -> datetime:
    if raw:
        try:
            parsed = parsedate_to_datetime(str(raw))
        except (TypeError, ValueError, IndexError, OverflowError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    return datetime.now(timezone.utc)


def _decode_text_part(part: email.message.Message) -> str:
    payload = part.get_payload(decode=True) or b""
    if len(payload) > _MAX_BODY_BYTES:
        payload = payload[:_MAX_BODY_BYTES]
    try:
        return payload.decode(part.get_content_charset() or "utf-8", errors="replace").strip()
    except LookupError:
        return payload.decode("utf-8", errors="replace").strip()


def _html_to_text(html: str) -> str:
    text = re.sub(r"(?is)<(script|style).*?</\1>", "", html)
    text = re.sub(r"(?i)<br\s*/?>|</p>|</div>", "\n", text)
    text = _HTML_TAG_PATTERN.sub("", text)
    text = (
        text.replace("&nbsp;", " ")
        .replace("&amp;", "&")
        .replace("&lt;", "<")
        .replace("&gt;", ">")
    )
    return re.sub(r"\n\s*\n+", "\n\n", text).strip()


def _extract_bodies(message: email.message.Message) -> tuple[str, str | None]:
    plain_parts: list[str] = []
    html_parts: list[str] = []
    parts = message.walk() if message.is_multipart() else [message]
    for part in parts:
        if part.get_content_maintype() == "multipart":
            continue
        if (part.get_content_disposition() or "").lower() == "attachment":
            continue
        content_type = (part.get_content_type() or "").lower()
        if content_type not in {"text/plain", "text/html"}:
            continue
        text = _decode_text_part(part)
        if not text:
            continue
        if content_type == "text/plain":
            plain_parts.append(text)
        else:
            html_parts.append(text)
    html_body = "\n\n".join(html_parts).strip() or None
    text_body = "\n\n".join(plain_parts).strip()
    if not text_body and html_body:
        text_body = _html_to_text(html_body)
    return text_body, html_body


def parse_message(uid: int, raw: bytes) -> InboundMessage:
    """Parse raw RFC 822 bytes into an :class:`InboundMessage`.

    Missing subject, sender or body fall back to placeholders so none of the
    fields is ever empty. Raises :class:`ParseError` when the bytes do not
    contain a usable message.
    """

    if not raw or not raw.strip():
        raise ParseError(f"Message {uid} is empty")
    try:
        message = email.message_from_bytes(raw, policy=email.policy.compat32)
    except (TypeError, ValueError, UnicodeError) as exc:
        raise ParseError(f"Message {uid} could not be parsed: {exc}") from exc
    if not message.keys():
        raise ParseError(f"Message {uid} has no headers")

    try:
        text_body, html_body = _extract_bodies(message)
    except (LookupError, ValueError, UnicodeError, AssertionError) as exc:
        raise ParseError(f"Message {uid} body could not be decoded: {exc}") from exc

    subject = _decode_header_value(message.get("Subject")) or SUBJECT_PLACEHOLDER
    from_header = _decode_header_value(message.get("From"))
    addresses = getaddresses([from_header]) if from_header else []
    from_name, from_address = addresses[0] if addresses else ("", "")
    from_address = from_address.strip().lower() or SENDER_PLACEHOLDER
    from_name = from_name.strip() or from_address.split("@", 1)[0]

    message_ids = _parse_message_ids(message.get("Message-ID"))
    in_reply_to = _parse_message_ids(message.get("In-Reply-To"))
    body = text_body or BODY_PLACEHOLDER

    inbound = InboundMessage(
        uid=uid,
        subject=subject,
        from_name=from_name,
        from_address=from_address,
        received_at=_parse_received_at(message.get("Date")),
        text_body=body,
        html_body=html_body,
        message_id=message_ids[0] if message_ids else None,
        in_reply_to=in_reply_to[0] if in_reply_to else None,
        references=_parse_message_ids(message.get("References")),
        is_auto_reply=is_auto_reply(message, subject),
        is_spam=is_spam(message, subject, body),
        priority=classify_priority(subject, body),
        category=detect_category(subject, body),
        tags=extract_tags(subject, body),
    )
    log_debug("Parsed inbound message", uid=uid, message_id=inbound.message_id)
    return inbound


def placeholder_message(uid: int, error: str) -> InboundMessage:
    """Build a stand-in for a message that could not be parsed."""

    return InboundMessage(
        uid=uid,
        subject=f"{SUBJECT_PLACEHOLDER} [unparseable message {uid}]",
        from_name="",
        from_address=SENDER_PLACEHOLDER,
        received_at=datetime.now(timezone.utc),
        text_body=f"{BODY_PLACEHOLDER}\n\nThe original message could not be parsed: {error}",
    )
