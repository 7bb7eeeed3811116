"""Database engine and schema bootstrap.

The knowledge base is a single SQLite database accessed through SQLAlchemy.
Writers are serialized by SQLite and WAL mode lets readers proceed without
blocking them, which is what the three concurrent loops rely on.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import structlog
from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.engine import Connection, make_url

logger = structlog.get_logger()


_SCHEMA_VERSION = 1

_SCHEMA_V1: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS messages (
        sequence INTEGER PRIMARY KEY AUTOINCREMENT,
        provider_id TEXT NOT NULL UNIQUE,
        content_hash TEXT NOT NULL UNIQUE,
        thread_id TEXT,
        sender TEXT NOT NULL,
        subject TEXT NOT NULL,
        received_at_iso TEXT NOT NULL,
        ingested_at_iso TEXT NOT NULL,
        body_text TEXT NOT NULL,
        body_html TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_messages_received_at
        ON messages(received_at_iso)
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_cursor (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        token TEXT,
        sequence INTEGER NOT NULL DEFAULT 0,
        updated_at_iso TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS index_entries (
        message_sequence INTEGER PRIMARY KEY,
        provider_id TEXT NOT NULL,
        tokens_json TEXT NOT NULL,
        model_version TEXT,
        embedding_pending INTEGER NOT NULL DEFAULT 0,
        attempts INTEGER NOT NULL DEFAULT 0,
        indexed_at_iso TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_index_entries_model_version
        ON index_entries(model_version, embedding_pending)
    """,
    """
    CREATE TABLE IF NOT EXISTS index_terms (
        term TEXT NOT NULL,
        message_sequence INTEGER NOT NULL,
        PRIMARY KEY (term, message_sequence)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_index_terms_message
        ON index_terms(message_sequence)
    """,
    """
    CREATE TABLE IF NOT EXISTS subscribers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        address TEXT NOT NULL UNIQUE,
        display_name TEXT,
        topics_json TEXT NOT NULL DEFAULT '[]',
        active INTEGER NOT NULL DEFAULT 1,
        watermark INTEGER NOT NULL DEFAULT 0,
        created_at_iso TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_digests (
        subscriber_id INTEGER PRIMARY KEY,
        status TEXT NOT NULL,
        subject TEXT NOT NULL,
        body TEXT NOT NULL,
        content_format TEXT NOT NULL,
        from_sequence INTEGER NOT NULL,
        target_sequence INTEGER NOT NULL,
        message_count INTEGER NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at_iso TEXT NOT NULL,
        sent_at_iso TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pipeline_kv (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at_iso TEXT NOT NULL
    )
    """,
)


def to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def from_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    # ISO-8601 parsing: allow trailing Z.
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return datetime.fromisoformat(raw)


def create_db_engine(database_url: str) -> Engine:
    """Create an engine for the knowledge base.

    Args:
        database_url: SQLAlchemy URL, e.g. ``sqlite:///mailbrief.sqlite3``.

    Returns:
        A configured SQLAlchemy engine.
    """

    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        raise ValueError(f"Unsupported database backend: {url.get_backend_name()}")

    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, connect_args={"timeout": 30})

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, _record) -> None:  # noqa: ANN001
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA busy_timeout=30000;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.close()

    return engine


def initialize_schema(engine: Engine) -> None:
    """Create or verify the schema (idempotent)."""

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
        )

        current_version = _get_schema_version(conn)
        if current_version is None:
            for statement in _SCHEMA_V1:
                conn.execute(text(statement))
            conn.execute(
                text("INSERT OR REPLACE INTO _schema_meta(key, value) VALUES('schema_version', :v)"),
                {"v": str(_SCHEMA_VERSION)},
            )
            conn.execute(
                text("INSERT OR IGNORE INTO sync_cursor(id, token, sequence) VALUES (1, NULL, 0)")
            )
            logger.info("schema_created", version=_SCHEMA_VERSION)
            return

        if current_version != _SCHEMA_VERSION:
            raise RuntimeError(
                f"Unsupported schema version {current_version}; expected {_SCHEMA_VERSION}"
            )


def _get_schema_version(conn: Connection) -> int | None:
    row = conn.execute(
        text("SELECT value FROM _schema_meta WHERE key = 'schema_version'")
    ).fetchone()
    if row is None:
        return None
    return int(row[0])
