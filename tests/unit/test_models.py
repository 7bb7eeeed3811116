"""Unit tests for data models."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from mailbrief.models import (
    ContentFormat,
    DigestContent,
    IndexEntry,
    MailboxPage,
    Message,
    PendingDigest,
    PendingStatus,
    PutOutcome,
    PutResult,
    Subscriber,
    SyncCursor,
)


class TestMessage:
    """Test suite for Message model."""

    def test_message_creation(self) -> None:
        """Test creating a Message instance."""
        message = Message(
            provider_id="msg123",
            content_hash="0" * 64,
            thread_id="thread456",
            subject="Test Email",
            sender="sender@example.com",
            received_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
            body_text="This is a test email.",
        )

        assert message.provider_id == "msg123"
        assert message.sequence is None
        assert message.ingested_at.tzinfo is not None

    def test_received_at_is_required(self) -> None:
        with pytest.raises(ValidationError):
            Message(provider_id="msg123", content_hash="0" * 64)


class TestPutOutcome:
    def test_inserted_flag(self) -> None:
        assert PutOutcome(result=PutResult.INSERTED, provider_id="a", sequence=1).inserted
        assert not PutOutcome(result=PutResult.DUPLICATE_IGNORED, provider_id="a").inserted


class TestCursorAndPages:
    def test_empty_cursor(self) -> None:
        assert SyncCursor().is_empty
        assert not SyncCursor(token="history:1:").is_empty

    def test_page_defaults(self) -> None:
        page = MailboxPage()

        assert page.items == []
        assert page.next_token is None
        assert page.has_more is False


class TestIndexEntry:
    def test_is_current(self) -> None:
        entry = IndexEntry(message_sequence=1, provider_id="a", model_version="ollama:all-minilm")

        assert entry.is_current("ollama:all-minilm")
        assert not entry.is_current("ollama:nomic-embed-text")
        assert not entry.model_copy(update={"embedding_pending": True}).is_current("ollama:all-minilm")


class TestDigestModels:
    """Test suite for subscriber and pending digest models."""

    def test_subscriber_defaults(self) -> None:
        subscriber = Subscriber(id=1, address="reader@example.com")

        assert subscriber.watermark == 0
        assert subscriber.topics == []
        assert subscriber.active is True

    def test_pending_digest_round_trips_through_json(self) -> None:
        pending = PendingDigest(
            subscriber_id=1,
            content=DigestContent(subject="Weekly", body="<p>Hi</p>", content_format=ContentFormat.HTML),
            from_sequence=0,
            target_sequence=12,
            message_count=12,
        )

        restored = PendingDigest.model_validate_json(pending.model_dump_json())

        assert restored == pending
        assert restored.status is PendingStatus.PENDING
        assert restored.content.content_format is ContentFormat.HTML
