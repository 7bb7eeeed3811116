"""Normalization of mailbox envelopes into stored messages."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from email.utils import parseaddr

from mailbrief.models import MailboxItem, Message

RE_PREFIX = re.compile(r"^\s*(re|fwd|fw)\s*:\s*", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_subject(subject: str | None) -> str:
    if not subject:
        return ""
    s = subject.strip().casefold()
    # Strip stacked prefixes such as "Re: Fwd: ...".
    while True:
        stripped = RE_PREFIX.sub("", s)
        if stripped == s:
            break
        s = stripped
    return s.strip()


def normalize_body(body: str | None) -> str:
    if not body:
        return ""
    return _WHITESPACE_RE.sub(" ", body).strip().casefold()


def content_hash(subject: str | None, body: str | None) -> str:
    """sha-256 hex digest over normalized subject and body."""

    payload = f"{normalize_subject(subject)}\n{normalize_body(body)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def item_to_message(item: MailboxItem, *, ingested_at: datetime | None = None) -> Message:
    """Convert a mailbox envelope into an unsequenced :class:`Message`."""

    now = ingested_at or datetime.now(timezone.utc)
    _, sender_addr = parseaddr(item.sender or "")
    received_at = item.received_at or now
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)

    return Message(
        provider_id=item.provider_id,
        content_hash=content_hash(item.subject, item.body_text),
        thread_id=item.thread_id,
        sender=(sender_addr or item.sender or "").strip().lower(),
        subject=(item.subject or "").strip(),
        received_at=received_at,
        ingested_at=now,
        body_text=item.body_text or "",
        body_html=item.body_html,
    )
