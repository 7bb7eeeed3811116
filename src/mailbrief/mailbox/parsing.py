"""Helpers for parsing Gmail API messages into mailbox envelopes."""

from __future__ import annotations

import base64
import html
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

from mailbrief.models import MailboxItem

_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_RE = re.compile(r"<(style|script)[^>]*>.*?</\1>", re.DOTALL | re.IGNORECASE)
_BREAK_RE = re.compile(r"<(br|/p|/div|/h[1-6]|/li)\s*/?>", re.IGNORECASE)


def _header_map(message: dict[str, Any]) -> dict[str, str]:
    payload = message.get("payload") or {}
    headers = payload.get("headers") or []
    result: dict[str, str] = {}
    for h in headers:
        name = h.get("name")
        value = h.get("value")
        if isinstance(name, str) and isinstance(value, str):
            # Gmail can include duplicates; keep the first for now.
            result.setdefault(name.lower(), value)
    return result


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _internal_date(message: dict[str, Any]) -> datetime | None:
    raw = message.get("internalDate")
    try:
        ms = int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def _decode_b64(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    raw = base64.urlsafe_b64decode(padded.encode("utf-8"))
    return raw.decode("utf-8", errors="replace")


def _collect_parts(part: dict[str, Any], mime_prefix: str) -> list[str]:
    mime = (part.get("mimeType") or "").lower()
    body = part.get("body") or {}
    data = body.get("data")
    if data and mime.startswith(mime_prefix):
        return [_decode_b64(data)]

    texts: list[str] = []
    for p in part.get("parts") or []:
        texts.extend(_collect_parts(p, mime_prefix))
    return texts


def html_to_text(value: str) -> str:
    """Best-effort plain text rendering of an HTML body."""

    text = _BLOCK_RE.sub("", value)
    text = _BREAK_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text)
    return text.strip()


def message_to_mailbox_item(message: dict[str, Any]) -> MailboxItem:
    """Convert a Gmail API message (format=full) to a MailboxItem.

    Args:
        message: Gmail API message dict.

    Returns:
        MailboxItem: Parsed envelope with plain-text and optional HTML body.
    """

    hm = _header_map(message)
    payload = message.get("payload") or {}

    text_parts = _collect_parts(payload, "text/plain")
    html_parts = _collect_parts(payload, "text/html")

    body_html = "\n".join(html_parts).strip() or None
    body_text = "\n\n".join(text_parts).strip()
    if not body_text and body_html:
        body_text = html_to_text(body_html)
    if not body_text:
        # Fallback: Gmail's snippet is short but better than nothing.
        body_text = html.unescape((message.get("snippet") or "").strip())

    return MailboxItem(
        provider_id=str(message.get("id") or ""),
        thread_id=str(message.get("threadId") or "") or None,
        sender=hm.get("from") or "",
        subject=hm.get("subject") or "",
        received_at=_internal_date(message) or _parse_date(hm.get("date")),
        body_text=body_text,
        body_html=body_html,
    )
