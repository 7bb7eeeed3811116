"""Embedding capability.

Real embeddings come from Ollama's embeddings API. A deterministic,
hash-seeded implementation is kept as an explicit opt-in for development; it
is restartable but NOT semantically meaningful.
"""

from __future__ import annotations

import hashlib
import math
import random
from typing import Protocol

from mailbrief.config import Settings
from mailbrief.exceptions import ConfigurationError, EmbeddingUnavailableError, OllamaConnectionError
from mailbrief.ollama import OllamaClient


class Embedder(Protocol):
    """Produces fixed-size vectors for text."""

    @property
    def model_version(self) -> str:
        """Identifier stored alongside every vector this embedder produces."""
        ...

    @property
    def dimension(self) -> int:
        ...

    async def embed(self, text: str) -> list[float]:
        ...


def normalize_vector(vec: list[float]) -> list[float]:
    norm = math.sqrt(sum(v * v for v in vec))
    if norm == 0.0:
        return vec
    return [v / norm for v in vec]


class DeterministicEmbedder:
    """Unit-length pseudo-random vectors seeded by the text's sha-256."""

    def __init__(self, dimension: int = 384) -> None:
        self._dimension = dimension

    @property
    def model_version(self) -> str:
        return f"deterministic:{self._dimension}"

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        seed = int.from_bytes(digest[:8], "big", signed=False)

        rng = random.Random(seed)
        vec = [rng.random() - 0.5 for _ in range(self._dimension)]
        return normalize_vector(vec)


class OllamaEmbedder:
    """Embeddings from a local Ollama model."""

    def __init__(self, settings: Settings, client: OllamaClient | None = None) -> None:
        self._settings = settings
        self._client = client or OllamaClient(settings)

    @property
    def model_version(self) -> str:
        return self._settings.embedding_model_version

    @property
    def dimension(self) -> int:
        return self._settings.embedding_dimension

    async def embed(self, text: str) -> list[float]:
        try:
            vec = await self._client.embed(text, model=self._settings.embedding_model)
        except OllamaConnectionError as exc:
            raise EmbeddingUnavailableError(str(exc)) from exc

        if len(vec) != self.dimension:
            raise ConfigurationError(
                f"Embedding size mismatch: got {len(vec)}, expected {self.dimension}. "
                f"Set MAILBRIEF_EMBEDDING_DIMENSION to match '{self._settings.embedding_model}'."
            )
        return normalize_vector(vec)


def build_embedder(settings: Settings) -> Embedder:
    """Return the single active embedder selected by configuration."""

    if settings.embedding_backend == "deterministic":
        return DeterministicEmbedder(settings.embedding_dimension)
    return OllamaEmbedder(settings)
