"""Gmail API mailbox adapter.

This module provides the reference implementation of the mailbox
collaborator on top of the Gmail REST API.

Notes:
    The Google API client is synchronous. Calls are wrapped with
    `asyncio.to_thread` so the sync loop can remain async-friendly.

    Cursor tokens are opaque to the rest of the system. Internally they take
    two shapes:

    - ``list:<historyId>:<days>:<pageToken>`` while listing a bounded window
      of recent mail (first run and resync). ``historyId`` is captured before
      listing starts so nothing that arrives during the listing is missed.
    - ``history:<historyId>:<pageToken>`` for incremental history paging.

    Either shape may carry a trailing ``:<skip>``. Message bodies are fetched
    one request at a time, so a page stops early once it has used half of
    ``mailbox_timeout_seconds`` and hands back a token that re-lists the same
    Gmail page and skips what was already delivered.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import structlog

from mailbrief.config import Settings
from mailbrief.exceptions import (
    AuthenticationError,
    CursorInvalidError,
    GmailAPIError,
    TransientError,
)
from mailbrief.mailbox.parsing import message_to_mailbox_item
from mailbrief.models import MailboxItem, MailboxPage

logger = structlog.get_logger()

_LIST_PREFIX = "list"
_HISTORY_PREFIX = "history"
_TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}
_RATE_LIMIT_REASONS = (b"rateLimitExceeded", b"userRateLimitExceeded", b"quotaExceeded")
# Share of mailbox_timeout_seconds a page may spend fetching message bodies.
_PAGE_TIME_BUDGET = 0.5


def _http_status(exc: Exception) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        resp = getattr(exc, "resp", None)
        status = getattr(resp, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def classify_gmail_error(exc: Exception, *, cursor_call: bool = False) -> Exception:
    """Map a Google client exception onto the mailbox error taxonomy."""

    from googleapiclient.errors import HttpError

    if isinstance(exc, HttpError):
        status = _http_status(exc)
        content = getattr(exc, "content", b"") or b""
        if status == 404 and cursor_call:
            return CursorInvalidError(f"Gmail history cursor rejected: {exc}")
        if status == 400 and cursor_call:
            return CursorInvalidError(f"Gmail rejected page token: {exc}")
        if status == 403 and any(reason in content for reason in _RATE_LIMIT_REASONS):
            return TransientError(f"Gmail rate limited: {exc}")
        if status in (401, 403):
            return AuthenticationError(f"Gmail rejected credentials: {exc}")
        if status in _TRANSIENT_STATUSES:
            return TransientError(f"Gmail temporarily unavailable ({status}): {exc}")
        return GmailAPIError(str(exc))

    from google.auth.exceptions import RefreshError, TransportError

    if isinstance(exc, RefreshError):
        return AuthenticationError(f"Gmail token refresh failed: {exc}")
    if isinstance(exc, (TransportError, TimeoutError, ConnectionError, OSError)):
        return TransientError(f"Gmail transport error: {exc}")
    return GmailAPIError(str(exc))


def parse_token(token: str) -> tuple[str, list[str]]:
    """Split a cursor token into its kind and fields.

    List tokens yield ``[historyId, days, pageToken, skip]`` and history
    tokens ``[historyId, pageToken, skip]``. ``skip`` counts messages of the
    listing page already delivered by an earlier, partial page.
    """

    kind, _, rest = token.partition(":")
    parts = rest.split(":")
    if kind == _LIST_PREFIX and len(parts) in (3, 4):
        if len(parts) == 3:
            parts.append("0")
        if parts[0].isdigit() and parts[1].isdigit() and parts[3].isdigit():
            return kind, parts
    elif kind == _HISTORY_PREFIX and len(parts) in (2, 3):
        if len(parts) == 2:
            parts.append("0")
        if parts[0].isdigit() and parts[2].isdigit():
            return kind, parts
    raise CursorInvalidError(f"Unrecognized cursor token: {token!r}")


def _with_skip(token: str, skip: int) -> str:
    return f"{token}:{skip}" if skip else token


class GmailMailbox:
    """Gmail mailbox collaborator.

    Credentials are read from an authorized-user token file. Acquiring and
    renewing that token is the responsibility of an external OAuth flow.
    """

    def __init__(self, settings: Settings | None = None, service: Any | None = None) -> None:
        """Initialize the Gmail mailbox.

        Args:
            settings: Application settings. If None, uses default settings.
            service: Prebuilt Gmail API service, mainly for tests.
        """
        from mailbrief.config import get_settings

        self.settings = settings or get_settings()
        self._service: Any | None = service
        logger.info("gmail_mailbox_initialized", user_id=self.settings.gmail_user_id)

    async def authenticate(self) -> None:
        """Build the Gmail service from the stored token.

        Raises:
            AuthenticationError: If the token is missing or unusable.
        """

        if self._service is not None:
            return

        token_path = Path(self.settings.gmail_token_path)
        if not token_path.exists():
            raise AuthenticationError(
                f"Gmail token file not found: {token_path}. "
                "Complete the OAuth flow externally and point MAILBRIEF_GMAIL_TOKEN_PATH at it."
            )

        try:
            self._service = await asyncio.to_thread(
                self._build_service, token_path, self.settings.gmail_scope
            )
        except AuthenticationError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("gmail_authentication_failed", error=str(exc))
            raise AuthenticationError(str(exc)) from exc

        logger.info("gmail_authentication_completed")

    async def resync_token(self, days: int) -> str:
        await self.authenticate()
        profile = await self._call(self._get_profile_sync)
        history_id = int(profile.get("historyId") or 0)
        logger.info("gmail_resync_token_issued", history_id=history_id, days=days)
        return f"{_LIST_PREFIX}:{history_id}:{int(days)}:"

    async def fetch_page(self, cursor_token: str | None) -> MailboxPage:
        await self.authenticate()

        if cursor_token is None:
            cursor_token = await self.resync_token(self.settings.initial_sync_days)

        kind, parts = parse_token(cursor_token)
        deadline = asyncio.get_running_loop().time() + (
            self.settings.mailbox_timeout_seconds * _PAGE_TIME_BUDGET
        )
        if kind == _LIST_PREFIX:
            history_id, days, page_token, skip = int(parts[0]), int(parts[1]), parts[2] or None, int(parts[3])
            return await self._fetch_list_page(history_id, days, page_token, skip, deadline)

        history_id, page_token, skip = int(parts[0]), parts[1] or None, int(parts[2])
        return await self._fetch_history_page(history_id, page_token, skip, deadline)

    async def _fetch_list_page(
        self, history_id: int, days: int, page_token: str | None, skip: int, deadline: float
    ) -> MailboxPage:
        response = await self._call(
            self._list_messages_sync, f"newer_than:{days}d", page_token, cursor_call=True
        )
        ids = [m.get("id") for m in response.get("messages", []) or [] if m.get("id")]
        remaining = ids[skip:]
        items, consumed = await self._fetch_items(remaining, deadline)
        if consumed < len(remaining):
            return MailboxPage(
                items=items,
                next_token=_with_skip(
                    f"{_LIST_PREFIX}:{history_id}:{days}:{page_token or ''}", skip + consumed
                ),
                has_more=True,
            )

        next_page = response.get("nextPageToken")
        if next_page:
            return MailboxPage(
                items=items,
                next_token=f"{_LIST_PREFIX}:{history_id}:{days}:{next_page}",
                has_more=True,
            )
        return MailboxPage(items=items, next_token=f"{_HISTORY_PREFIX}:{history_id}:", has_more=False)

    async def _fetch_history_page(
        self, history_id: int, page_token: str | None, skip: int, deadline: float
    ) -> MailboxPage:
        response = await self._call(
            self._list_history_sync, history_id, page_token, cursor_call=True
        )

        ids: list[str] = []
        seen: set[str] = set()
        for row in response.get("history", []) or []:
            for added in row.get("messagesAdded", []) or []:
                msg_id = (added.get("message") or {}).get("id")
                if msg_id and msg_id not in seen:
                    seen.add(msg_id)
                    ids.append(msg_id)
        remaining = ids[skip:]
        items, consumed = await self._fetch_items(remaining, deadline)
        if consumed < len(remaining):
            return MailboxPage(
                items=items,
                next_token=_with_skip(f"{_HISTORY_PREFIX}:{history_id}:{page_token or ''}", skip + consumed),
                has_more=True,
            )

        next_page = response.get("nextPageToken")
        if next_page:
            return MailboxPage(
                items=items,
                next_token=f"{_HISTORY_PREFIX}:{history_id}:{next_page}",
                has_more=True,
            )

        latest = int(response.get("historyId") or history_id)
        return MailboxPage(items=items, next_token=f"{_HISTORY_PREFIX}:{latest}:", has_more=False)

    async def _fetch_items(self, message_ids: list[str], deadline: float) -> tuple[list[MailboxItem], int]:
        """Fetch message bodies one by one until done or past ``deadline``.

        Returns the items and how many ids were consumed. At least one id is
        consumed per call so a page always makes progress.
        """

        loop = asyncio.get_running_loop()
        items: list[MailboxItem] = []
        consumed = 0
        for message_id in message_ids:
            if consumed and loop.time() >= deadline:
                logger.info(
                    "gmail_page_split",
                    fetched=consumed,
                    remaining=len(message_ids) - consumed,
                )
                break
            consumed += 1
            try:
                raw = await self._call(self._get_message_sync, message_id)
            except GmailAPIError as exc:
                # Deleted between listing and fetching; nothing to ingest.
                logger.warning("gmail_message_unavailable", message_id=message_id, error=str(exc))
                continue
            item = message_to_mailbox_item(raw)
            if item.provider_id:
                items.append(item)
        return items, consumed

    async def _call(self, fn: Any, *args: Any, cursor_call: bool = False) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except Exception as exc:  # noqa: BLE001
            mapped = classify_gmail_error(exc, cursor_call=cursor_call)
            logger.warning(
                "gmail_call_failed",
                call=getattr(fn, "__name__", str(fn)),
                error_type=type(mapped).__name__,
                error=str(exc),
            )
            raise mapped from exc

    def _build_service(self, token_path: Path, scope: str) -> Any:
        # Imported lazily to keep import-time cost low and tests fast.
        from google.oauth2.credentials import Credentials
        from googleapiclient.discovery import build

        creds = Credentials.from_authorized_user_file(str(token_path), scopes=[scope])
        if not creds.valid and not creds.refresh_token:
            raise AuthenticationError(
                "Gmail token is expired and has no refresh token; re-run the OAuth flow."
            )

        # cache_discovery=False prevents writing discovery docs to disk.
        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    def _get_profile_sync(self) -> dict[str, Any]:
        assert self._service is not None
        return self._service.users().getProfile(userId=self.settings.gmail_user_id).execute()

    def _list_messages_sync(self, query: str, page_token: str | None) -> dict[str, Any]:
        assert self._service is not None
        return (
            self._service.users()
            .messages()
            .list(
                userId=self.settings.gmail_user_id,
                maxResults=self.settings.gmail_page_size,
                q=query,
                pageToken=page_token,
            )
            .execute()
        )

    def _list_history_sync(self, history_id: int, page_token: str | None) -> dict[str, Any]:
        assert self._service is not None
        return (
            self._service.users()
            .history()
            .list(
                userId=self.settings.gmail_user_id,
                startHistoryId=str(history_id),
                historyTypes=["messageAdded"],
                maxResults=self.settings.gmail_page_size,
                pageToken=page_token,
            )
            .execute()
        )

    def _get_message_sync(self, message_id: str) -> dict[str, Any]:
        assert self._service is not None
        return (
            self._service.users()
            .messages()
            .get(userId=self.settings.gmail_user_id, id=message_id, format="full")
            .execute()
        )
