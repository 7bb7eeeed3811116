"""Incremental mailbox synchronization.

Mandatory order per page:
1) Fetch the page for the stored cursor token
2) Normalize and `put` every item
3) Advance the cursor to the page's terminal token

The cursor is only advanced after step (2) has committed every item, so a
crash anywhere re-fetches at most one page and dedup absorbs the repeats.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

import structlog

from mailbrief.config import Settings
from mailbrief.exceptions import AuthenticationError, CursorInvalidError, TransientError
from mailbrief.mailbox.base import Mailbox
from mailbrief.mailbox.normalize import item_to_message
from mailbrief.models import MailboxPage, PutResult
from mailbrief.store.messages import MessageStore
from mailbrief.utils import ExponentialBackoff, retry_on_failure

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class SyncResult:
    """Counters for one sync pass."""

    pages: int = 0
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0
    resynced: bool = False
    cursor_token: str | None = None
    inserted_sequences: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class _PageStats:
    inserted: list[int]
    duplicates: int
    skipped: int
    latest_sequence: int


class SyncEngine:
    """Drives incremental retrieval from a mailbox into the MessageStore."""

    def __init__(
        self,
        store: MessageStore,
        mailbox: Mailbox,
        settings: Settings | None = None,
        on_pass_complete: Callable[[SyncResult], None] | None = None,
    ) -> None:
        """Initialize the sync engine.

        Args:
            store: Destination message store.
            mailbox: Mailbox collaborator.
            settings: Application settings. If None, uses default settings.
            on_pass_complete: Called after every successful pass (e.g. to wake the indexer).
        """
        from mailbrief.config import get_settings

        self.settings = settings or get_settings()
        self.store = store
        self.mailbox = mailbox
        self._on_pass_complete = on_pass_complete

    async def run_once(self) -> SyncResult:
        """Sync until the mailbox reports no more pages.

        Transient failures are retried with capped exponential backoff up to
        ``sync_max_retries`` times; progress made before a failure is kept.

        Raises:
            AuthenticationError: Credentials were rejected.
            TransientError: Retries were exhausted.
        """

        s = self.settings
        run = retry_on_failure(
            max_retries=s.sync_max_retries,
            delay=s.backoff_initial_seconds,
            backoff=s.backoff_multiplier,
            max_delay=s.backoff_max_seconds,
            retry_on=(TransientError,),
        )(self._run_pass)
        result = await run()
        self._notify(result)
        return result

    async def run_forever(self) -> None:
        """Poll the mailbox until cancelled.

        Transient failures back off without limit; authentication failures
        stop the loop.
        """

        s = self.settings
        backoff = ExponentialBackoff(
            initial=s.backoff_initial_seconds,
            maximum=s.backoff_max_seconds,
            multiplier=s.backoff_multiplier,
        )
        logger.info("sync_loop_started", poll_interval=s.sync_poll_interval_seconds)

        while True:
            try:
                result = await self._run_pass()
            except AuthenticationError:
                logger.error("sync_loop_stopped_authentication_failed")
                raise
            except (TransientError, CursorInvalidError) as exc:
                delay = backoff.next_delay()
                logger.warning("sync_pass_failed", error=str(exc), retry_in=delay)
                await asyncio.sleep(delay)
                continue
            except Exception as exc:  # noqa: BLE001 - the loop should keep polling
                delay = backoff.next_delay()
                logger.exception("sync_pass_crashed", error=str(exc), retry_in=delay)
                await asyncio.sleep(delay)
                continue

            backoff.reset()
            self._notify(result)
            await asyncio.sleep(s.sync_poll_interval_seconds)

    async def _run_pass(self) -> SyncResult:
        cursor = await asyncio.to_thread(self.store.load_cursor)
        token = cursor.token
        result = SyncResult(cursor_token=token)

        logger.info("sync_pass_start", cursor_token=token, cursor_sequence=cursor.sequence)

        while True:
            try:
                page = await self._with_timeout(self.mailbox.fetch_page(token), "fetch_page")
            except CursorInvalidError as exc:
                if result.resynced:
                    # The replacement token was rejected as well; surface it.
                    raise
                logger.warning(
                    "sync_cursor_invalid",
                    cursor_token=token,
                    resync_window_days=self.settings.resync_window_days,
                    error=str(exc),
                )
                token = await self._with_timeout(
                    self.mailbox.resync_token(self.settings.resync_window_days), "resync_token"
                )
                result.resynced = True
                continue

            stats = await asyncio.to_thread(self._persist_page, page)

            next_token = page.next_token or token
            await asyncio.to_thread(self.store.advance_cursor, next_token, stats.latest_sequence)
            token = next_token

            result.pages += 1
            result.fetched += len(page.items)
            result.inserted += len(stats.inserted)
            result.inserted_sequences.extend(stats.inserted)
            result.duplicates += stats.duplicates
            result.skipped += stats.skipped
            result.cursor_token = token

            logger.info(
                "sync_page_committed",
                page=result.pages,
                items=len(page.items),
                inserted=len(stats.inserted),
                duplicates=stats.duplicates,
                has_more=page.has_more,
            )

            if not page.has_more:
                break

        logger.info(
            "sync_pass_done",
            pages=result.pages,
            fetched=result.fetched,
            inserted=result.inserted,
            duplicates=result.duplicates,
            resynced=result.resynced,
            cursor_token=result.cursor_token,
        )
        return result

    def _persist_page(self, page: MailboxPage) -> _PageStats:
        inserted: list[int] = []
        duplicates = 0
        skipped = 0

        for item in page.items:
            if not item.provider_id:
                skipped += 1
                logger.warning("sync_item_missing_provider_id", subject=item.subject)
                continue

            outcome = self.store.put(item_to_message(item))
            if outcome.result is PutResult.INSERTED and outcome.sequence is not None:
                inserted.append(outcome.sequence)
            else:
                duplicates += 1

        return _PageStats(
            inserted=inserted,
            duplicates=duplicates,
            skipped=skipped,
            latest_sequence=self.store.latest_sequence(),
        )

    async def _with_timeout(self, awaitable: Awaitable[T], operation: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.mailbox_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise TransientError(
                f"Mailbox {operation} timed out after {self.settings.mailbox_timeout_seconds}s"
            ) from exc

    def _notify(self, result: SyncResult) -> None:
        if self._on_pass_complete is not None:
            self._on_pass_complete(result)
