"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import hashlib
import math
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import pytest
from qdrant_client import QdrantClient

from mailbrief.config import Settings
from mailbrief.db import create_db_engine, initialize_schema
from mailbrief.exceptions import CursorInvalidError, DeliveryError, EmbeddingUnavailableError, SummarizationError
from mailbrief.models import (
    ContentFormat,
    DeliveryReceipt,
    DigestContent,
    MailboxItem,
    MailboxPage,
    Message,
    SubscriberContext,
)
from mailbrief.runtime import build_components
from mailbrief.store import MessageStore, PipelineState

BASE_TIME = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


class FakeMailbox:
    """In-memory mailbox with offset tokens.

    Tokens look like ``main:<offset>`` or ``resync:<offset>``. The terminal
    token of any listing is ``main:<len(items)>``, so items appended later
    show up on the next fetch like new history records.
    """

    def __init__(self, items: list[MailboxItem] | None = None, page_size: int = 2) -> None:
        self.items: list[MailboxItem] = list(items or [])
        self.resync_items: list[MailboxItem] | None = None
        self.page_size = page_size
        self.errors: list[Exception] = []
        self.invalid_tokens: set[str] = set()
        self.fetch_calls: list[str | None] = []
        self.resync_calls: list[int] = []

    async def fetch_page(self, cursor_token: str | None) -> MailboxPage:
        self.fetch_calls.append(cursor_token)
        if self.errors:
            raise self.errors.pop(0)
        if cursor_token in self.invalid_tokens:
            raise CursorInvalidError(f"history token {cursor_token} expired")

        source, _, raw_offset = (cursor_token or "main:0").partition(":")
        offset = int(raw_offset)
        items = self.items if source == "main" else (self.resync_items or self.items)

        page = items[offset : offset + self.page_size]
        end = offset + len(page)
        if end < len(items):
            return MailboxPage(items=page, next_token=f"{source}:{end}", has_more=True)
        return MailboxPage(items=page, next_token=f"main:{len(self.items)}", has_more=False)

    async def resync_token(self, days: int) -> str:
        self.resync_calls.append(days)
        return "resync:0"


class FakeEmbedder:
    """Embedder with optional fixed vectors per text fragment and scripted failures."""

    def __init__(self, dimension: int = 8, model_version: str = "fake:v1") -> None:
        self._dimension = dimension
        self._model_version = model_version
        self.fixed: dict[str, list[float]] = {}
        self.fail_containing: set[str] = set()
        self.fail_all = False
        self.calls: list[str] = []

    @property
    def model_version(self) -> str:
        return self._model_version

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail_all or any(marker in text for marker in self.fail_containing):
            raise EmbeddingUnavailableError("embedder offline")
        for fragment, vec in self.fixed.items():
            if fragment in text:
                return _unit(vec)
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return _unit([b - 127.5 for b in digest[: self._dimension]])


class RecordingSummarizer:
    def __init__(self) -> None:
        self.calls: list[tuple[list[str], SubscriberContext]] = []
        self.fail = False

    async def summarize(self, messages: list[Message], context: SubscriberContext) -> DigestContent:
        self.calls.append(([m.provider_id for m in messages], context))
        if self.fail:
            raise SummarizationError("model unavailable")
        return DigestContent(
            subject=f"Digest for {context.address}",
            body="\n".join(f"- {m.provider_id}: {m.subject}" for m in messages),
            content_format=ContentFormat.MARKDOWN,
        )


class FakeTransport:
    def __init__(self) -> None:
        self.sent: list[tuple[str, DigestContent]] = []
        self.attempts = 0
        self.failures_left = 0
        self.fail_addresses: set[str] = set()

    async def send(self, address: str, digest: DigestContent) -> DeliveryReceipt:
        self.attempts += 1
        if self.failures_left > 0:
            self.failures_left -= 1
            raise DeliveryError("relay unavailable")
        if address in self.fail_addresses:
            raise DeliveryError(f"recipient {address} rejected")
        self.sent.append((address, digest))
        return DeliveryReceipt(address=address, message_id=f"<{len(self.sent)}@test>", accepted_at=BASE_TIME)


def _unit(vec: list[float]) -> list[float]:
    norm = math.sqrt(sum(v * v for v in vec))
    return [v / norm for v in vec] if norm else vec


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway database with fast retries."""
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'mailbrief.sqlite3'}",
        qdrant_path=":memory:",
        embedding_backend="deterministic",
        embedding_dimension=8,
        summarizer_backend="markdown",
        backoff_initial_seconds=0.001,
        backoff_max_seconds=0.005,
        sync_max_retries=2,
        embedding_max_retries=1,
        mailbox_timeout_seconds=2.0,
        embedding_timeout_seconds=2.0,
        summarization_timeout_seconds=2.0,
        delivery_timeout_seconds=2.0,
        index_batch_size=50,
        index_workers=4,
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def db_engine(settings: Settings):
    engine = create_db_engine(settings.database_url)
    initialize_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine) -> MessageStore:
    return MessageStore(db_engine)


@pytest.fixture
def pipeline_state(db_engine) -> PipelineState:
    return PipelineState(db_engine)


@pytest.fixture
def qdrant_client():
    client = QdrantClient(location=":memory:")
    yield client
    client.close()


@pytest.fixture
def make_item() -> Callable[..., MailboxItem]:
    """Build mailbox items; ``minutes`` offsets received_at from a fixed base time."""

    def _make(
        provider_id: str,
        subject: str = "Hello",
        body: str | None = None,
        sender: str = "alice@example.com",
        minutes: int = 0,
    ) -> MailboxItem:
        return MailboxItem(
            provider_id=provider_id,
            thread_id=f"t-{provider_id}",
            sender=sender,
            subject=subject,
            received_at=BASE_TIME + timedelta(minutes=minutes),
            body_text=body if body is not None else f"Body of {provider_id}",
        )

    return _make


@pytest.fixture
def fake_mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def embedder_factory() -> type[FakeEmbedder]:
    """The fake embedder class, for tests that need several model versions."""

    return FakeEmbedder


@pytest.fixture
def summarizer() -> RecordingSummarizer:
    return RecordingSummarizer()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def components(settings, fake_mailbox, fake_embedder, summarizer, transport, qdrant_client):
    """Fully wired components with every external collaborator faked."""

    c = build_components(
        settings,
        mailbox=fake_mailbox,
        embedder=fake_embedder,
        summarizer=summarizer,
        transport=transport,
        qdrant_client=qdrant_client,
    )
    yield c
    c.engine.dispose()
