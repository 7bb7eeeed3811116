"""Provider-neutral envelopes returned by a mailbox collaborator."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class MailboxItem(BaseModel):
    """A message as delivered by the mailbox, before normalization."""

    provider_id: str = Field(description="Provider-native message id")
    thread_id: str | None = Field(default=None)
    sender: str = Field(default="", description="Raw From header")
    subject: str = Field(default="")
    received_at: datetime | None = Field(default=None)
    body_text: str = Field(default="")
    body_html: str | None = Field(default=None)


class MailboxPage(BaseModel):
    """One page of mailbox history."""

    items: list[MailboxItem] = Field(default_factory=list)
    next_token: str | None = Field(
        default=None,
        description="Token to resume from once this page is durably stored",
    )
    has_more: bool = Field(default=False)
