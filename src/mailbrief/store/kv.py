"""Pipeline key/value state.

Used for:
- Index watermark (`index_watermark`): last message sequence fully indexed
- Digest cadence (`last_digest_cycle_at`)

The SQL database is the canonical source of truth for loop progress, so a
restarted process resumes exactly where the previous one stopped.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Engine, text

from mailbrief.db import from_iso, to_iso

KEY_INDEX_WATERMARK = "index_watermark"
KEY_LAST_DIGEST_CYCLE_AT = "last_digest_cycle_at"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class PipelineState:
    """Small typed facade over the ``pipeline_kv`` table."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get(self, key: str) -> str | None:
        query = text("SELECT value FROM pipeline_kv WHERE key = :key")
        with self._engine.connect() as conn:
            row = conn.execute(query, {"key": key}).fetchone()
        return None if row is None else str(row[0])

    def set(self, key: str, value: str) -> None:
        query = text(
            """
            INSERT INTO pipeline_kv (key, value, updated_at_iso)
            VALUES (:key, :value, :updated_at)
            ON CONFLICT (key)
            DO UPDATE SET value = excluded.value, updated_at_iso = excluded.updated_at_iso
            """
        )
        with self._engine.begin() as conn:
            conn.execute(query, {"key": key, "value": value, "updated_at": to_iso(_now_utc())})

    def delete(self, key: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(text("DELETE FROM pipeline_kv WHERE key = :key"), {"key": key})

    def get_index_watermark(self) -> int:
        raw = self.get(KEY_INDEX_WATERMARK)
        if raw is None or not raw.strip():
            return 0
        return int(raw)

    def set_index_watermark(self, sequence: int) -> None:
        """Advance the index watermark; never moves it backwards."""

        query = text(
            """
            INSERT INTO pipeline_kv (key, value, updated_at_iso)
            VALUES (:key, :value, :updated_at)
            ON CONFLICT (key)
            DO UPDATE SET
                value = CASE
                    WHEN CAST(pipeline_kv.value AS INTEGER) < CAST(excluded.value AS INTEGER)
                    THEN excluded.value
                    ELSE pipeline_kv.value
                END,
                updated_at_iso = excluded.updated_at_iso
            """
        )
        with self._engine.begin() as conn:
            conn.execute(
                query,
                {
                    "key": KEY_INDEX_WATERMARK,
                    "value": str(int(sequence)),
                    "updated_at": to_iso(_now_utc()),
                },
            )

    def get_last_digest_cycle_at(self) -> datetime | None:
        return from_iso(self.get(KEY_LAST_DIGEST_CYCLE_AT))

    def set_last_digest_cycle_at(self, dt: datetime) -> None:
        self.set(KEY_LAST_DIGEST_CYCLE_AT, to_iso(dt) or "")

