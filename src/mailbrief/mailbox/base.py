"""Mailbox collaborator contract."""

from __future__ import annotations

from typing import Protocol

from mailbrief.models import MailboxPage


class Mailbox(Protocol):
    """Source of mailbox history.

    Implementations must raise:
        CursorInvalidError: when ``cursor_token`` is no longer accepted.
        TransientError: for rate limits, timeouts and network failures.
        AuthenticationError: when credentials are missing or rejected.
    """

    async def fetch_page(self, cursor_token: str | None) -> MailboxPage:
        """Return the next page of messages after ``cursor_token``.

        ``None`` means no history has been processed yet.
        """
        ...

    async def resync_token(self, days: int) -> str:
        """Return a token that re-lists the last ``days`` days of mail."""
        ...
