"""RFC 822 helpers shared by the Gmail (raw format) and IMAP/SMTP adapters."""

from __future__ import annotations

import email
import re
from datetime import datetime
from email.message import EmailMessage
from email.policy import default as default_policy
from email.utils import format_datetime, getaddresses, make_msgid, parsedate_to_datetime
from typing import Any

from mailsync.application.dtos.mailbox import MailMessage, OutgoingEmail
from mailsync.shared.utils.datetime import ensure_utc, utc_now

SNIPPET_LENGTH = 200
_WS_RE = re.compile(r"\s+")
_TAG_RE = re.compile(r"<[^>]+>")


def split_addresses(*values: str | None) -> list[str]:
    """Return bare addresses from one or more address header values."""
    return [addr for _, addr in getaddresses([v for v in values if v]) if addr]


def make_snippet(text: str | None, html: str | None = None) -> str:
    source = text or _TAG_RE.sub(" ", html or "")
    return _WS_RE.sub(" ", source).strip()[:SNIPPET_LENGTH]


def _header_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError):
        return None


def _part_content(part: Any) -> str | None:
    if part is None:
        return None
    try:
        return part.get_content()
    except (LookupError, ValueError):
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def parse_rfc822(
    raw: bytes,
    *,
    external_id: str,
    thread_id: str | None = None,
    labels: list[str] | None = None,
    is_read: bool = False,
    is_starred: bool = False,
    received_at: datetime | None = None,
    provider_metadata: dict[str, Any] | None = None,
) -> MailMessage:
    """Parse a full RFC 822 message into a MailMessage."""
    msg = email.message_from_bytes(raw, policy=default_policy)
    body_text = _part_content(msg.get_body(preferencelist=("plain",)))
    body_html = _part_content(msg.get_body(preferencelist=("html",)))
    has_attachments = any(True for _ in msg.iter_attachments()) if msg.is_multipart() else False
    from_values = split_addresses(msg.get("From"))
    return MailMessage(
        external_id=external_id,
        thread_id=thread_id,
        from_address=from_values[0] if from_values else "",
        to_addresses=split_addresses(msg.get("To")),
        cc_addresses=split_addresses(msg.get("Cc")),
        subject=str(msg.get("Subject", "") or ""),
        received_at=received_at or _header_date(msg.get("Date")) or utc_now(),
        snippet=make_snippet(body_text, body_html),
        body_text=body_text,
        body_html=body_html,
        labels=list(labels or []),
        is_read=is_read,
        is_starred=is_starred,
        has_attachments=has_attachments,
        internet_message_id=msg.get("Message-ID"),
        provider_metadata=dict(provider_metadata or {}),
    )


def build_mime_message(payload: OutgoingEmail, from_address: str) -> EmailMessage:
    """Build an outgoing message; sets threading headers when in_reply_to is given."""
    msg = EmailMessage()
    msg["From"] = from_address
    msg["To"] = ", ".join(payload.to)
    if payload.cc:
        msg["Cc"] = ", ".join(payload.cc)
    if payload.bcc:
        msg["Bcc"] = ", ".join(payload.bcc)
    msg["Subject"] = payload.subject
    msg["Date"] = format_datetime(utc_now())
    domain = from_address.rpartition("@")[2] or None
    msg["Message-ID"] = make_msgid(domain=domain)
    if payload.in_reply_to:
        msg["In-Reply-To"] = payload.in_reply_to
        msg["References"] = payload.in_reply_to
    msg.set_content(payload.body_text or "")
    if payload.body_html:
        msg.add_alternative(payload.body_html, subtype="html")
    return msg


def envelope_recipients(payload: OutgoingEmail) -> list[str]:
    """All SMTP RCPT TO addresses (To, Cc and Bcc) without duplicates."""
    seen: dict[str, None] = {}
    for addr in split_addresses(*payload.to, *payload.cc, *payload.bcc):
        seen.setdefault(addr, None)
    return list(seen)
