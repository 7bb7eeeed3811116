"""Durable, deduplicated message store and sync cursor.

Every write is its own transaction: a single ``put`` or a single cursor
advance. Sequence numbers come from SQLite's AUTOINCREMENT inside the
inserting transaction and SQLite serializes writers, so any reader sees a
gap-free prefix of history as of the last committed write.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime, timezone

import structlog
from sqlalchemy import Engine, bindparam, text
from sqlalchemy.engine import Row

from mailbrief.db import from_iso, to_iso
from mailbrief.models import Message, PutOutcome, PutResult, SyncCursor

logger = structlog.get_logger()


_MESSAGE_COLUMNS = """
    sequence,
    provider_id,
    content_hash,
    thread_id,
    sender,
    subject,
    received_at_iso,
    ingested_at_iso,
    body_text,
    body_html
"""


class MessageStore:
    """Repository owning Message rows and the SyncCursor singleton."""

    def __init__(self, engine: Engine) -> None:
        """Create a store.

        Args:
            engine: Engine bound to an initialized knowledge base.
        """

        self._engine = engine

    def put(self, message: Message) -> PutOutcome:
        """Insert a message unless it is already known.

        A message is known when its provider id or its content hash is
        already stored. Existing rows are never modified.
        """

        with self._engine.begin() as conn:
            existing = conn.execute(
                text("SELECT sequence FROM messages WHERE provider_id = :provider_id"),
                {"provider_id": message.provider_id},
            ).fetchone()
            if existing is not None:
                return PutOutcome(
                    result=PutResult.DUPLICATE_IGNORED,
                    provider_id=message.provider_id,
                    sequence=int(existing[0]),
                    reason="provider_id",
                )

            existing = conn.execute(
                text("SELECT sequence FROM messages WHERE content_hash = :content_hash"),
                {"content_hash": message.content_hash},
            ).fetchone()
            if existing is not None:
                logger.info(
                    "message_content_duplicate",
                    provider_id=message.provider_id,
                    existing_sequence=int(existing[0]),
                )
                return PutOutcome(
                    result=PutResult.DUPLICATE_IGNORED,
                    provider_id=message.provider_id,
                    sequence=int(existing[0]),
                    reason="content_hash",
                )

            # ON CONFLICT covers a concurrent writer that committed between
            # the lookups above and this insert.
            result = conn.execute(
                text(
                    """
                    INSERT INTO messages (
                        provider_id,
                        content_hash,
                        thread_id,
                        sender,
                        subject,
                        received_at_iso,
                        ingested_at_iso,
                        body_text,
                        body_html
                    )
                    VALUES (
                        :provider_id,
                        :content_hash,
                        :thread_id,
                        :sender,
                        :subject,
                        :received_at_iso,
                        :ingested_at_iso,
                        :body_text,
                        :body_html
                    )
                    ON CONFLICT DO NOTHING
                    RETURNING sequence
                    """
                ),
                {
                    "provider_id": message.provider_id,
                    "content_hash": message.content_hash,
                    "thread_id": message.thread_id,
                    "sender": message.sender,
                    "subject": message.subject,
                    "received_at_iso": to_iso(message.received_at),
                    "ingested_at_iso": to_iso(message.ingested_at),
                    "body_text": message.body_text,
                    "body_html": message.body_html,
                },
            ).fetchone()

        if result is None:
            return PutOutcome(
                result=PutResult.DUPLICATE_IGNORED,
                provider_id=message.provider_id,
                reason="conflict",
            )

        return PutOutcome(
            result=PutResult.INSERTED,
            provider_id=message.provider_id,
            sequence=int(result[0]),
        )

    def put_many(self, messages: Iterable[Message]) -> list[PutOutcome]:
        """Store messages one transaction at a time, preserving input order."""

        return [self.put(m) for m in messages]

    def get_since(
        self,
        sequence: int,
        *,
        up_to: int | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """Return messages with ``sequence > sequence`` in ascending order.

        Args:
            sequence: Exclusive lower bound.
            up_to: Optional inclusive upper bound (a cycle snapshot).
            limit: Optional maximum number of rows.
        """

        clauses = ["sequence > :after"]
        params: dict[str, int] = {"after": int(sequence)}
        if up_to is not None:
            clauses.append("sequence <= :up_to")
            params["up_to"] = int(up_to)

        sql = f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE {' AND '.join(clauses)} ORDER BY sequence"
        if limit is not None:
            sql += " LIMIT :limit"
            params["limit"] = int(limit)

        with self._engine.connect() as conn:
            rows = conn.execute(text(sql), params).fetchall()
        return [self._row_to_message(row) for row in rows]

    def get_by_sequences(self, sequences: Sequence[int]) -> dict[int, Message]:
        """Fetch messages by sequence; missing sequences are simply absent."""

        if not sequences:
            return {}

        query = text(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE sequence IN :sequences"
        ).bindparams(bindparam("sequences", expanding=True))
        with self._engine.connect() as conn:
            rows = conn.execute(query, {"sequences": [int(s) for s in sequences]}).fetchall()
        return {int(row.sequence): self._row_to_message(row) for row in rows}

    def get(self, provider_id: str) -> Message | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE provider_id = :provider_id"),
                {"provider_id": provider_id},
            ).fetchone()
        return None if row is None else self._row_to_message(row)

    def latest_sequence(self) -> int:
        with self._engine.connect() as conn:
            (value,) = conn.execute(text("SELECT COALESCE(MAX(sequence), 0) FROM messages")).fetchone()
        return int(value or 0)

    def count(self) -> int:
        with self._engine.connect() as conn:
            (value,) = conn.execute(text("SELECT COUNT(*) FROM messages")).fetchone()
        return int(value or 0)

    def load_cursor(self) -> SyncCursor:
        with self._engine.connect() as conn:
            row = conn.execute(
                text("SELECT token, sequence, updated_at_iso FROM sync_cursor WHERE id = 1")
            ).fetchone()
        if row is None:
            return SyncCursor()
        return SyncCursor(
            token=row.token,
            sequence=int(row.sequence or 0),
            updated_at=from_iso(row.updated_at_iso),
        )

    def advance_cursor(self, token: str | None, up_to_sequence: int) -> SyncCursor:
        """Record that everything up to ``token`` is durably stored.

        Must only be called after every message of the page has been put.
        The stored sequence never moves backwards.
        """

        now = datetime.now(timezone.utc)
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO sync_cursor (id, token, sequence, updated_at_iso)
                    VALUES (1, :token, :sequence, :updated_at)
                    ON CONFLICT (id) DO UPDATE SET
                        token = excluded.token,
                        sequence = MAX(sync_cursor.sequence, excluded.sequence),
                        updated_at_iso = excluded.updated_at_iso
                    """
                ),
                {"token": token, "sequence": int(up_to_sequence), "updated_at": to_iso(now)},
            )
        logger.debug("sync_cursor_advanced", token=token, sequence=up_to_sequence)
        return self.load_cursor()

    def reset_cursor(self) -> None:
        """Forget the provider token so the next pass bootstraps from scratch."""

        with self._engine.begin() as conn:
            conn.execute(
                text("UPDATE sync_cursor SET token = NULL, updated_at_iso = :updated_at WHERE id = 1"),
                {"updated_at": to_iso(datetime.now(timezone.utc))},
            )
        logger.warning("sync_cursor_reset")

    def _row_to_message(self, row: Row) -> Message:
        return Message(
            sequence=int(row.sequence),
            provider_id=row.provider_id,
            content_hash=row.content_hash,
            thread_id=row.thread_id,
            sender=row.sender,
            subject=row.subject,
            received_at=from_iso(row.received_at_iso),
            ingested_at=from_iso(row.ingested_at_iso),
            body_text=row.body_text,
            body_html=row.body_html,
        )
