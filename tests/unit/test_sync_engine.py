"""Unit tests for the sync engine."""

from __future__ import annotations

import asyncio
import base64
import random
import time
from unittest.mock import MagicMock

import pytest

from mailbrief.config import Settings
from mailbrief.db import create_db_engine, initialize_schema
from mailbrief.exceptions import AuthenticationError, TransientError
from mailbrief.mailbox.gmail import GmailMailbox
from mailbrief.store import MessageStore
from mailbrief.sync import SyncEngine


def _snapshot(store: MessageStore) -> list[tuple[int, str, str]]:
    return [(m.sequence, m.provider_id, m.content_hash) for m in store.get_since(0)]


class _CrashingStore(MessageStore):
    """Raises after a chosen number of successful writes (puts and cursor advances)."""

    def __init__(self, engine, crash_after: int) -> None:
        super().__init__(engine)
        self.writes_left = crash_after

    def _tick(self) -> None:
        if self.writes_left <= 0:
            raise RuntimeError("simulated crash")
        self.writes_left -= 1

    def put(self, message):
        self._tick()
        return super().put(message)

    def advance_cursor(self, token, up_to_sequence):
        self._tick()
        return super().advance_cursor(token, up_to_sequence)


class TestSyncPass:
    @pytest.mark.asyncio
    async def test_pages_are_stored_and_cursor_advanced(self, settings, store, fake_mailbox, make_item) -> None:
        fake_mailbox.items = [make_item(f"m{i}", subject=f"S{i}") for i in range(5)]
        engine = SyncEngine(store, fake_mailbox, settings=settings)

        result = await engine.run_once()

        assert result.pages == 3
        assert result.inserted == 5
        assert result.duplicates == 0
        assert store.count() == 5
        cursor = store.load_cursor()
        assert cursor.token == "main:5"
        assert cursor.sequence == 5
        assert fake_mailbox.fetch_calls == [None, "main:2", "main:4"]

    @pytest.mark.asyncio
    async def test_resync_of_synced_mailbox_inserts_nothing(self, settings, store, fake_mailbox, make_item) -> None:
        """Re-running against an already fully-synced mailbox is a no-op."""
        fake_mailbox.items = [make_item(f"m{i}", subject=f"S{i}") for i in range(4)]
        engine = SyncEngine(store, fake_mailbox, settings=settings)
        await engine.run_once()
        before = _snapshot(store)

        store.reset_cursor()
        again = await engine.run_once()

        assert again.inserted == 0
        assert again.duplicates == 4
        assert _snapshot(store) == before

    @pytest.mark.asyncio
    async def test_incremental_pass_picks_up_new_items_only(self, settings, store, fake_mailbox, make_item) -> None:
        fake_mailbox.items = [make_item("m0"), make_item("m1")]
        engine = SyncEngine(store, fake_mailbox, settings=settings)
        await engine.run_once()

        fake_mailbox.items.append(make_item("m2", subject="new"))
        result = await engine.run_once()

        assert result.inserted == 1
        assert result.inserted_sequences == [3]
        assert fake_mailbox.fetch_calls[-1] == "main:2"

    @pytest.mark.asyncio
    async def test_on_pass_complete_is_called(self, settings, store, fake_mailbox, make_item) -> None:
        fake_mailbox.items = [make_item("m0")]
        seen = []
        engine = SyncEngine(store, fake_mailbox, settings=settings, on_pass_complete=seen.append)

        result = await engine.run_once()

        assert seen == [result]


class TestCursorInvalid:
    @pytest.mark.asyncio
    async def test_invalid_cursor_triggers_bounded_resync(self, settings, store, fake_mailbox, make_item) -> None:
        """An expired cursor re-fetches the resync window and dedup absorbs the overlap."""
        fake_mailbox.items = [make_item(f"m{i}", subject=f"S{i}") for i in range(3)]
        engine = SyncEngine(store, fake_mailbox, settings=settings)
        await engine.run_once()
        assert store.load_cursor().token == "main:3"

        # Provider truncated history: the stored token is no longer accepted,
        # and the resync window re-delivers m1, m2 plus two unseen messages.
        fake_mailbox.invalid_tokens.add("main:3")
        fake_mailbox.items += [make_item("m3", subject="S3"), make_item("m4", subject="S4")]
        fake_mailbox.resync_items = fake_mailbox.items[1:]

        result = await engine.run_once()

        assert result.resynced is True
        assert fake_mailbox.resync_calls == [settings.resync_window_days]
        assert result.inserted == 2
        assert result.duplicates == 2
        assert store.count() == 5
        assert sorted(m.provider_id for m in store.get_since(0)) == ["m0", "m1", "m2", "m3", "m4"]
        assert store.load_cursor().token == "main:5"

    @pytest.mark.asyncio
    async def test_resynced_duplicates_with_new_provider_ids_are_rejected(
        self, settings, store, fake_mailbox, make_item
    ) -> None:
        fake_mailbox.items = [make_item("m0", subject="Invoice", body="Amount due")]
        engine = SyncEngine(store, fake_mailbox, settings=settings)
        await engine.run_once()

        fake_mailbox.invalid_tokens.add("main:1")
        fake_mailbox.resync_items = [make_item("m0-reissued", subject="Invoice", body="Amount   due")]

        result = await engine.run_once()

        assert result.duplicates == 1
        assert store.count() == 1


class TestErrors:
    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, settings, store, fake_mailbox, make_item) -> None:
        fake_mailbox.items = [make_item("m0")]
        fake_mailbox.errors = [TransientError("429"), TransientError("503")]
        engine = SyncEngine(store, fake_mailbox, settings=settings)

        result = await engine.run_once()

        assert result.inserted == 1

    @pytest.mark.asyncio
    async def test_transient_errors_exhaust_bounded_retries(self, settings, store, fake_mailbox) -> None:
        fake_mailbox.errors = [TransientError("down")] * (settings.sync_max_retries + 1)
        engine = SyncEngine(store, fake_mailbox, settings=settings)

        with pytest.raises(TransientError):
            await engine.run_once()

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, settings, store) -> None:
        class SlowMailbox:
            async def fetch_page(self, cursor_token):
                await asyncio.sleep(10)

            async def resync_token(self, days):
                return "main:0"

        engine = SyncEngine(
            store,
            SlowMailbox(),
            settings=settings.model_copy(update={"mailbox_timeout_seconds": 0.01, "sync_max_retries": 0}),
        )

        with pytest.raises(TransientError):
            await engine.run_once()

    @pytest.mark.asyncio
    async def test_slow_gmail_page_still_makes_progress(self, settings, store) -> None:
        """A listing page whose bodies take longer than the timeout is split, not retried forever."""
        service = MagicMock()
        users = service.users.return_value
        users.getProfile.return_value.execute.return_value = {"historyId": "900"}
        users.messages.return_value.list.return_value.execute.return_value = {
            "messages": [{"id": f"g{i}"} for i in range(10)],
        }

        def slow_get(userId: str, id: str, format: str) -> MagicMock:  # noqa: A002
            time.sleep(0.05)
            request = MagicMock()
            request.execute.return_value = {
                "id": id,
                "threadId": f"t-{id}",
                "internalDate": "1735732800000",
                "payload": {
                    "mimeType": "text/plain",
                    "headers": [{"name": "Subject", "value": f"Subject {id}"}],
                    "body": {"data": base64.urlsafe_b64encode(f"Body {id}".encode()).decode()},
                },
            }
            return request

        users.messages.return_value.get.side_effect = slow_get
        fast_timeout = settings.model_copy(update={"mailbox_timeout_seconds": 0.2, "sync_max_retries": 0})
        engine = SyncEngine(store, GmailMailbox(fast_timeout, service=service), settings=fast_timeout)

        result = await engine.run_once()

        assert result.inserted == 10
        assert result.pages > 1
        assert store.count() == 10
        assert store.load_cursor().token == "history:900:"

    @pytest.mark.asyncio
    async def test_authentication_failure_stops_the_loop(self, settings, store, fake_mailbox) -> None:
        fake_mailbox.errors = [AuthenticationError("token revoked")]
        engine = SyncEngine(store, fake_mailbox, settings=settings)

        with pytest.raises(AuthenticationError):
            await asyncio.wait_for(engine.run_forever(), timeout=2)

    @pytest.mark.asyncio
    async def test_run_forever_backs_off_then_recovers(self, settings, store, fake_mailbox, make_item) -> None:
        fake_mailbox.items = [make_item("m0")]
        fake_mailbox.errors = [TransientError("flaky")] * 3
        passes = []
        engine = SyncEngine(store, fake_mailbox, settings=settings, on_pass_complete=passes.append)

        task = asyncio.create_task(engine.run_forever())
        try:
            for _ in range(200):
                if passes:
                    break
                await asyncio.sleep(0.01)
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert passes and passes[0].inserted == 1


class TestCrashSafety:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(8))
    async def test_random_crash_points_converge(self, tmp_path, fake_mailbox, make_item, seed: int) -> None:
        """Crashing anywhere (before or after a cursor advance) and restarting reaches the same state."""
        items = [make_item(f"m{i}", subject=f"Subject {i}") for i in range(7)]
        # Item 5 duplicates item 2 by content.
        items[5] = make_item("m5", subject="Subject 2", body="Body of m2")
        fake_mailbox.items = items
        fake_mailbox.page_size = 3

        def settings_for(name: str) -> Settings:
            return Settings(
                database_url=f"sqlite:///{tmp_path / name}",
                sync_max_retries=0,
                backoff_initial_seconds=0.001,
            )

        reference_engine = create_db_engine(settings_for("reference.sqlite3").database_url)
        initialize_schema(reference_engine)
        reference = MessageStore(reference_engine)
        await SyncEngine(reference, fake_mailbox, settings=settings_for("reference.sqlite3")).run_once()

        crash_settings = settings_for(f"crash-{seed}.sqlite3")
        engine = create_db_engine(crash_settings.database_url)
        initialize_schema(engine)
        # 7 puts + 3 cursor advances happen in an uninterrupted run.
        crash_after = random.Random(seed).randint(0, 9)
        crashing = _CrashingStore(engine, crash_after)

        with pytest.raises(RuntimeError):
            await SyncEngine(crashing, fake_mailbox, settings=crash_settings).run_once()

        await SyncEngine(MessageStore(engine), fake_mailbox, settings=crash_settings).run_once()

        restarted = MessageStore(engine)
        assert _snapshot(restarted) == _snapshot(reference)
        assert restarted.load_cursor().token == reference.load_cursor().token
        assert restarted.count() == 6
