"""Ingested message and sync cursor models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PutResult(str, Enum):
    """Outcome of storing a message."""

    INSERTED = "inserted"
    DUPLICATE_IGNORED = "duplicate_ignored"


class Message(BaseModel):
    """A deduplicated message in the knowledge base.

    ``sequence`` is assigned by the store at ingestion and is ``None`` until
    the message has been persisted.
    """

    provider_id: str = Field(description="Provider-native message id")
    content_hash: str = Field(description="sha-256 over normalized subject and body")
    thread_id: str | None = Field(default=None, description="Provider thread id")
    sender: str = Field(default="", description="Sender address")
    subject: str = Field(default="", description="Subject header")
    received_at: datetime = Field(description="When the provider received the message")
    ingested_at: datetime = Field(default_factory=utc_now, description="When it was stored")
    body_text: str = Field(default="", description="Plain-text body")
    body_html: str | None = Field(default=None, description="HTML body, when present")
    sequence: int | None = Field(default=None, description="Local ingestion sequence number")


class PutOutcome(BaseModel):
    """Result of ``MessageStore.put`` with the sequence that was assigned."""

    result: PutResult
    provider_id: str
    sequence: int | None = None
    reason: str | None = Field(
        default=None,
        description="Which identity matched when the message was ignored",
    )

    @property
    def inserted(self) -> bool:
        return self.result is PutResult.INSERTED


class SyncCursor(BaseModel):
    """Singleton record of sync progress against the mailbox."""

    token: str | None = Field(default=None, description="Last processed provider history token")
    sequence: int = Field(default=0, description="Local sequence when the cursor last advanced")
    updated_at: datetime | None = None

    @property
    def is_empty(self) -> bool:
        return self.token is None
