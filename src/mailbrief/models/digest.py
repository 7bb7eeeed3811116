"""Subscriber and digest models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Subscriber(BaseModel):
    """A digest recipient and its watermark."""

    id: int
    address: str
    display_name: str | None = None
    topics: list[str] = Field(default_factory=list, description="Keywords to highlight")
    active: bool = True
    watermark: int = Field(default=0, description="Sequence of the last message in a sent digest")


class SubscriberContext(BaseModel):
    """Per-subscriber hints handed to the summarizer."""

    subscriber_id: int
    address: str
    display_name: str | None = None
    topics: list[str] = Field(default_factory=list)
    highlight_ids: list[str] = Field(
        default_factory=list,
        description="Provider ids of collected messages that match the subscriber's topics",
    )
    window_start: int = Field(description="Exclusive lower sequence bound of the digest")
    window_end: int = Field(description="Inclusive upper sequence bound (cycle snapshot)")


class ContentFormat(str, Enum):
    MARKDOWN = "markdown"
    HTML = "html"


class DigestContent(BaseModel):
    """Generated digest ready for delivery."""

    subject: str
    body: str
    content_format: ContentFormat = ContentFormat.MARKDOWN


class PendingStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"


class PendingDigest(BaseModel):
    """Durable record of a generated digest awaiting (or after) delivery."""

    subscriber_id: int
    status: PendingStatus = PendingStatus.PENDING
    content: DigestContent
    from_sequence: int
    target_sequence: int
    message_count: int
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime | None = None
    sent_at: datetime | None = None


class DeliveryReceipt(BaseModel):
    """Confirmation returned by a mail transport."""

    address: str
    message_id: str | None = None
    accepted_at: datetime
