"""SQL storage for index entries and the inverted term index."""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timezone

from sqlalchemy import Engine, bindparam, text
from sqlalchemy.engine import Row

from mailbrief.db import from_iso, to_iso
from mailbrief.models import IndexEntry


class IndexEntryRepository:
    """Repository for IndexEntry rows keyed by message sequence."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def upsert(self, entry: IndexEntry) -> None:
        """Write the entry and its terms atomically, replacing any previous version."""

        indexed_at = entry.indexed_at or datetime.now(timezone.utc)
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO index_entries (
                        message_sequence,
                        provider_id,
                        tokens_json,
                        model_version,
                        embedding_pending,
                        attempts,
                        indexed_at_iso
                    )
                    VALUES (
                        :message_sequence,
                        :provider_id,
                        :tokens_json,
                        :model_version,
                        :embedding_pending,
                        :attempts,
                        :indexed_at_iso
                    )
                    ON CONFLICT(message_sequence) DO UPDATE SET
                        provider_id=excluded.provider_id,
                        tokens_json=excluded.tokens_json,
                        model_version=excluded.model_version,
                        embedding_pending=excluded.embedding_pending,
                        attempts=excluded.attempts,
                        indexed_at_iso=excluded.indexed_at_iso
                    """
                ),
                {
                    "message_sequence": entry.message_sequence,
                    "provider_id": entry.provider_id,
                    "tokens_json": json.dumps(entry.tokens),
                    "model_version": entry.model_version,
                    "embedding_pending": 1 if entry.embedding_pending else 0,
                    "attempts": entry.attempts,
                    "indexed_at_iso": to_iso(indexed_at),
                },
            )
            conn.execute(
                text("DELETE FROM index_terms WHERE message_sequence = :seq"),
                {"seq": entry.message_sequence},
            )
            if entry.tokens:
                conn.execute(
                    text(
                        "INSERT OR IGNORE INTO index_terms (term, message_sequence) VALUES (:term, :seq)"
                    ),
                    [{"term": t, "seq": entry.message_sequence} for t in entry.tokens],
                )

    def get(self, message_sequence: int) -> IndexEntry | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                text("SELECT * FROM index_entries WHERE message_sequence = :seq"),
                {"seq": message_sequence},
            ).fetchone()
        return None if row is None else self._row_to_entry(row)

    def needing_embedding(self, model_version: str, limit: int) -> list[IndexEntry]:
        """Entries that are pending or were embedded by a different model."""

        with self._engine.connect() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT * FROM index_entries
                    WHERE embedding_pending = 1
                       OR model_version IS NULL
                       OR model_version != :model_version
                    ORDER BY message_sequence
                    LIMIT :limit
                    """
                ),
                {"model_version": model_version, "limit": int(limit)},
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def lexical_matches(self, terms: Sequence[str], limit: int) -> list[tuple[int, int]]:
        """Return ``(message_sequence, matched_term_count)`` best matches first.

        Equal counts are ordered by the message's received time, newest
        first, then by sequence, so the limit keeps the same messages the
        final ranking would prefer.
        """

        if not terms:
            return []

        query = text(
            """
            SELECT t.message_sequence, COUNT(*) AS matched
            FROM index_terms t
            JOIN messages m ON m.sequence = t.message_sequence
            WHERE t.term IN :terms
            GROUP BY t.message_sequence
            ORDER BY matched DESC, m.received_at_iso DESC, t.message_sequence DESC
            LIMIT :limit
            """
        ).bindparams(bindparam("terms", expanding=True))
        with self._engine.connect() as conn:
            rows = conn.execute(query, {"terms": list(terms), "limit": int(limit)}).fetchall()
        return [(int(row.message_sequence), int(row.matched)) for row in rows]

    def matched_term_counts(self, terms: Sequence[str], sequences: Sequence[int]) -> dict[int, int]:
        """Matched query-term counts for specific messages."""

        if not terms or not sequences:
            return {}

        query = text(
            """
            SELECT message_sequence, COUNT(*) AS matched
            FROM index_terms
            WHERE term IN :terms AND message_sequence IN :sequences
            GROUP BY message_sequence
            """
        ).bindparams(bindparam("terms", expanding=True), bindparam("sequences", expanding=True))
        with self._engine.connect() as conn:
            rows = conn.execute(
                query, {"terms": list(terms), "sequences": [int(s) for s in sequences]}
            ).fetchall()
        return {int(row.message_sequence): int(row.matched) for row in rows}

    def orphaned(self, limit: int = 500) -> list[IndexEntry]:
        """Entries whose message no longer exists."""

        with self._engine.connect() as conn:
            rows = conn.execute(
                text(
                    """
                    SELECT e.* FROM index_entries e
                    LEFT JOIN messages m ON m.sequence = e.message_sequence
                    WHERE m.sequence IS NULL
                    LIMIT :limit
                    """
                ),
                {"limit": int(limit)},
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def delete(self, message_sequence: int) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text("DELETE FROM index_terms WHERE message_sequence = :seq"), {"seq": message_sequence}
            )
            conn.execute(
                text("DELETE FROM index_entries WHERE message_sequence = :seq"),
                {"seq": message_sequence},
            )

    def count(self) -> int:
        with self._engine.connect() as conn:
            (value,) = conn.execute(text("SELECT COUNT(*) FROM index_entries")).fetchone()
        return int(value or 0)

    def count_needing_embedding(self, model_version: str) -> int:
        with self._engine.connect() as conn:
            (value,) = conn.execute(
                text(
                    """
                    SELECT COUNT(*) FROM index_entries
                    WHERE embedding_pending = 1
                       OR model_version IS NULL
                       OR model_version != :model_version
                    """
                ),
                {"model_version": model_version},
            ).fetchone()
        return int(value or 0)

    def _row_to_entry(self, row: Row) -> IndexEntry:
        return IndexEntry(
            message_sequence=int(row.message_sequence),
            provider_id=row.provider_id,
            tokens=json.loads(row.tokens_json),
            model_version=row.model_version,
            embedding_pending=bool(row.embedding_pending),
            attempts=int(row.attempts or 0),
            indexed_at=from_iso(row.indexed_at_iso),
        )
