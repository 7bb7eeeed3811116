"""Data models for mailbrief.

This module contains Pydantic models for data validation and serialization.
"""

from .digest import (
    ContentFormat,
    DeliveryReceipt,
    DigestContent,
    PendingDigest,
    PendingStatus,
    Subscriber,
    SubscriberContext,
)
from .index import IndexEntry, SearchHit
from .mailbox import MailboxItem, MailboxPage
from .message import Message, PutOutcome, PutResult, SyncCursor, utc_now

__all__ = [
    "ContentFormat",
    "DeliveryReceipt",
    "DigestContent",
    "IndexEntry",
    "MailboxItem",
    "MailboxPage",
    "Message",
    "PendingDigest",
    "PendingStatus",
    "PutOutcome",
    "PutResult",
    "SearchHit",
    "Subscriber",
    "SubscriberContext",
    "SyncCursor",
    "utc_now",
]
