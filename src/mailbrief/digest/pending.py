"""Pending digest records.

One row per subscriber. A row in ``pending`` status is the durability point
between summarizing and sending: while it exists the scheduler retries the
send of its stored content and never summarizes again for that subscriber.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Connection, Engine, text
from sqlalchemy.engine import Row

from mailbrief.db import from_iso, to_iso
from mailbrief.models import ContentFormat, DigestContent, PendingDigest, PendingStatus


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class PendingDigestRepository:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get(self, subscriber_id: int) -> PendingDigest | None:
        with self._engine.connect() as conn:
            row = conn.execute(
                text("SELECT * FROM pending_digests WHERE subscriber_id = :id"), {"id": subscriber_id}
            ).fetchone()
        return None if row is None else self._row_to_pending(row)

    def get_pending(self, subscriber_id: int) -> PendingDigest | None:
        record = self.get(subscriber_id)
        if record is None or record.status is not PendingStatus.PENDING:
            return None
        return record

    def list_pending(self) -> list[PendingDigest]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text("SELECT * FROM pending_digests WHERE status = :status ORDER BY subscriber_id"),
                {"status": PendingStatus.PENDING.value},
            ).fetchall()
        return [self._row_to_pending(row) for row in rows]

    def record(self, pending: PendingDigest) -> bool:
        """Persist generated content as pending.

        A previous ``sent`` record is replaced; an existing ``pending`` one is
        left untouched and ``False`` is returned.
        """

        query = text(
            """
            INSERT INTO pending_digests (
                subscriber_id, status, subject, body, content_format,
                from_sequence, target_sequence, message_count,
                attempts, last_error, created_at_iso, sent_at_iso
            )
            VALUES (
                :subscriber_id, :status, :subject, :body, :content_format,
                :from_sequence, :target_sequence, :message_count,
                0, NULL, :created_at, NULL
            )
            ON CONFLICT (subscriber_id) DO UPDATE SET
                status = excluded.status,
                subject = excluded.subject,
                body = excluded.body,
                content_format = excluded.content_format,
                from_sequence = excluded.from_sequence,
                target_sequence = excluded.target_sequence,
                message_count = excluded.message_count,
                attempts = 0,
                last_error = NULL,
                created_at_iso = excluded.created_at_iso,
                sent_at_iso = NULL
            WHERE pending_digests.status != :status
            """
        )
        with self._engine.begin() as conn:
            result = conn.execute(
                query,
                {
                    "subscriber_id": pending.subscriber_id,
                    "status": PendingStatus.PENDING.value,
                    "subject": pending.content.subject,
                    "body": pending.content.body,
                    "content_format": pending.content.content_format.value,
                    "from_sequence": pending.from_sequence,
                    "target_sequence": pending.target_sequence,
                    "message_count": pending.message_count,
                    "created_at": to_iso(pending.created_at or _now_utc()),
                },
            )
        return result.rowcount > 0

    def record_failure(self, subscriber_id: int, error: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE pending_digests
                    SET attempts = attempts + 1, last_error = :error
                    WHERE subscriber_id = :id AND status = :status
                    """
                ),
                {"id": subscriber_id, "error": error[:2000], "status": PendingStatus.PENDING.value},
            )

    def mark_sent(self, subscriber_id: int, conn: Connection) -> None:
        """Mark the record sent inside the caller's transaction."""

        conn.execute(
            text(
                """
                UPDATE pending_digests
                SET status = :sent, attempts = attempts + 1, last_error = NULL, sent_at_iso = :sent_at
                WHERE subscriber_id = :id AND status = :pending
                """
            ),
            {
                "id": subscriber_id,
                "sent": PendingStatus.SENT.value,
                "pending": PendingStatus.PENDING.value,
                "sent_at": to_iso(_now_utc()),
            },
        )

    def clear(self, subscriber_id: int) -> bool:
        """Drop a pending record without sending it. The watermark is not moved."""

        with self._engine.begin() as conn:
            result = conn.execute(
                text("DELETE FROM pending_digests WHERE subscriber_id = :id AND status = :status"),
                {"id": subscriber_id, "status": PendingStatus.PENDING.value},
            )
        return result.rowcount > 0

    def count_pending(self) -> int:
        with self._engine.connect() as conn:
            (value,) = conn.execute(
                text("SELECT COUNT(*) FROM pending_digests WHERE status = :status"),
                {"status": PendingStatus.PENDING.value},
            ).fetchone()
        return int(value or 0)

    def _row_to_pending(self, row: Row) -> PendingDigest:
        return PendingDigest(
            subscriber_id=int(row.subscriber_id),
            status=PendingStatus(row.status),
            content=DigestContent(
                subject=row.subject,
                body=row.body,
                content_format=ContentFormat(row.content_format),
            ),
            from_sequence=int(row.from_sequence),
            target_sequence=int(row.target_sequence),
            message_count=int(row.message_count),
            attempts=int(row.attempts or 0),
            last_error=row.last_error,
            created_at=from_iso(row.created_at_iso),
            sent_at=from_iso(row.sent_at_iso),
        )
