"""SQL-backed subscriber registry.

Owns the per-subscriber digest watermark. ``set_watermark`` accepts an
open connection so the scheduler can advance it in the same transaction
that marks a pending digest as sent.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import Connection, Engine, text
from sqlalchemy.engine import Row

from mailbrief.db import to_iso
from mailbrief.models import Subscriber

_SET_WATERMARK_SQL = text(
    """
    UPDATE subscribers
    SET watermark = CASE WHEN watermark < :sequence THEN :sequence ELSE watermark END
    WHERE id = :id
    """
)


class SqlSubscriberRegistry:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def list_active(self) -> list[Subscriber]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text("SELECT * FROM subscribers WHERE active = 1 ORDER BY id")
            ).fetchall()
        return [self._row_to_subscriber(row) for row in rows]

    def get(self, subscriber_id: int) -> Subscriber | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                text("SELECT * FROM subscribers WHERE id = :id"), {"id": subscriber_id}
            ).fetchone()
        return None if row is None else self._row_to_subscriber(row)

    def get_watermark(self, subscriber_id: int) -> int:
        with self._engine.connect() as conn:
            row = conn.execute(
                text("SELECT watermark FROM subscribers WHERE id = :id"), {"id": subscriber_id}
            ).fetchone()
        if row is None:
            raise KeyError(f"Unknown subscriber {subscriber_id}")
        return int(row[0])

    def set_watermark(self, subscriber_id: int, sequence: int, conn: Connection | None = None) -> None:
        """Advance the watermark; a lower value than the stored one is ignored."""

        params = {"id": subscriber_id, "sequence": int(sequence)}
        if conn is not None:
            conn.execute(_SET_WATERMARK_SQL, params)
            return
        with self._engine.begin() as own:
            own.execute(_SET_WATERMARK_SQL, params)

    def register(
        self,
        address: str,
        display_name: str | None = None,
        topics: Iterable[str] = (),
    ) -> Subscriber:
        """Add a subscriber, or refresh and reactivate an existing address.

        The watermark of an existing subscriber is preserved.
        """

        address = address.strip().lower()
        if not address or "@" not in address:
            raise ValueError(f"Invalid subscriber address: {address!r}")

        clean_topics = [t.strip() for t in topics if t and t.strip()]
        with self._engine.begin() as conn:
            row = conn.execute(
                text(
                    """
                    INSERT INTO subscribers (address, display_name, topics_json, active, watermark, created_at_iso)
                    VALUES (:address, :display_name, :topics_json, 1, 0, :created_at)
                    ON CONFLICT (address) DO UPDATE SET
                        display_name = excluded.display_name,
                        topics_json = excluded.topics_json,
                        active = 1
                    RETURNING *
                    """
                ),
                {
                    "address": address,
                    "display_name": display_name,
                    "topics_json": json.dumps(clean_topics),
                    "created_at": to_iso(datetime.now(timezone.utc)),
                },
            ).fetchone()
        return self._row_to_subscriber(row)

    def deactivate(self, subscriber_id: int) -> bool:
        with self._engine.begin() as conn:
            result = conn.execute(
                text("UPDATE subscribers SET active = 0 WHERE id = :id"), {"id": subscriber_id}
            )
        return result.rowcount > 0

    def _row_to_subscriber(self, row: Row) -> Subscriber:
        return Subscriber(
            id=int(row.id),
            address=row.address,
            display_name=row.display_name,
            topics=json.loads(row.topics_json or "[]"),
            active=bool(row.active),
            watermark=int(row.watermark),
        )
