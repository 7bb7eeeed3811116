"""Derived search representations."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class IndexEntry(BaseModel):
    """Searchable representation of one stored message.

    The vector itself is held by the vector index; ``model_version`` records
    which embedder produced it, or is ``None`` when only lexical data exists.
    """

    message_sequence: int
    provider_id: str
    tokens: list[str] = Field(default_factory=list, description="Case-folded lexical terms")
    model_version: str | None = None
    embedding_pending: bool = False
    attempts: int = 0
    indexed_at: datetime | None = None

    def is_current(self, model_version: str) -> bool:
        return not self.embedding_pending and self.model_version == model_version


class SearchHit(BaseModel):
    """A ranked search result."""

    provider_id: str
    message_sequence: int
    received_at: datetime
    lexical_score: float = 0.0
    vector_score: float = 0.0
    score: float = 0.0
