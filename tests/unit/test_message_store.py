"""Unit tests for the message store and sync cursor."""

from __future__ import annotations

import threading

from mailbrief.db import initialize_schema
from mailbrief.mailbox.normalize import item_to_message
from mailbrief.models import PutResult
from mailbrief.store import MessageStore


class TestPut:
    def test_insert_assigns_increasing_sequences(self, store: MessageStore, make_item) -> None:
        first = store.put(item_to_message(make_item("m1", subject="One")))
        second = store.put(item_to_message(make_item("m2", subject="Two")))

        assert first.result is PutResult.INSERTED
        assert second.inserted
        assert second.sequence == first.sequence + 1
        assert store.latest_sequence() == second.sequence

    def test_same_provider_id_is_ignored_and_never_overwritten(self, store: MessageStore, make_item) -> None:
        store.put(item_to_message(make_item("m1", subject="Original", body="first body")))
        outcome = store.put(item_to_message(make_item("m1", subject="Changed", body="other body")))

        assert outcome.result is PutResult.DUPLICATE_IGNORED
        assert outcome.reason == "provider_id"
        assert store.get("m1").subject == "Original"
        assert store.count() == 1

    def test_same_content_with_different_provider_ids(self, store: MessageStore, make_item) -> None:
        """Two items with identical content hash: only the first persists."""
        a = store.put(item_to_message(make_item("a", subject="Quarterly report", body="See attached")))
        b = store.put(item_to_message(make_item("b", subject="RE: quarterly report", body="See   attached")))
        c = store.put(item_to_message(make_item("c", subject="Quarterly report", body="see attached")))

        assert a.inserted
        assert b.result is PutResult.DUPLICATE_IGNORED and b.reason == "content_hash"
        assert c.result is PutResult.DUPLICATE_IGNORED
        assert store.count() == 1
        assert store.get("b") is None

    def test_concurrent_puts_yield_gap_free_sequences(self, store: MessageStore, make_item) -> None:
        messages = [item_to_message(make_item(f"m{i}", subject=f"Subject {i}")) for i in range(40)]
        # Every message is offered twice from different threads.
        work = messages + messages
        outcomes = []
        lock = threading.Lock()

        def worker(chunk) -> None:
            for m in chunk:
                result = store.put(m)
                with lock:
                    outcomes.append(result)

        threads = [threading.Thread(target=worker, args=(work[i::4],)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        inserted = sorted(o.sequence for o in outcomes if o.inserted)
        assert len(inserted) == 40
        assert inserted == list(range(inserted[0], inserted[0] + 40))
        assert store.count() == 40


class TestReads:
    def test_get_since_is_ascending_and_bounded(self, store: MessageStore, make_item) -> None:
        for i in range(5):
            store.put(item_to_message(make_item(f"m{i}", subject=f"S{i}")))

        assert [m.provider_id for m in store.get_since(0)] == ["m0", "m1", "m2", "m3", "m4"]
        assert [m.sequence for m in store.get_since(2)] == [3, 4, 5]
        assert [m.sequence for m in store.get_since(1, up_to=3)] == [2, 3]
        assert [m.sequence for m in store.get_since(0, limit=2)] == [1, 2]

    def test_get_by_sequences_skips_missing(self, store: MessageStore, make_item) -> None:
        store.put(item_to_message(make_item("m1")))

        found = store.get_by_sequences([1, 99])

        assert list(found) == [1]
        assert found[1].provider_id == "m1"
        assert store.get_by_sequences([]) == {}

    def test_round_trip_preserves_fields(self, store: MessageStore, make_item) -> None:
        original = item_to_message(make_item("m1", subject="Hello", body="World", minutes=5))
        store.put(original)

        loaded = store.get("m1")

        assert loaded.received_at == original.received_at
        assert loaded.body_text == "World"
        assert loaded.thread_id == "t-m1"
        assert loaded.sequence == 1


class TestCursor:
    def test_cursor_starts_empty(self, store: MessageStore) -> None:
        cursor = store.load_cursor()

        assert cursor.is_empty
        assert cursor.sequence == 0

    def test_advance_and_reset(self, store: MessageStore) -> None:
        store.advance_cursor("main:4", 10)
        cursor = store.advance_cursor("main:6", 7)

        assert cursor.token == "main:6"
        # The recorded sequence never moves backwards.
        assert cursor.sequence == 10
        assert cursor.updated_at is not None

        store.reset_cursor()
        assert store.load_cursor().token is None
        assert store.load_cursor().sequence == 10

    def test_schema_initialization_is_idempotent(self, db_engine, store: MessageStore) -> None:
        store.advance_cursor("main:1", 1)

        initialize_schema(db_engine)

        assert store.load_cursor().token == "main:1"
