"""Lexical + vector index over stored messages."""

from .embedding import DeterministicEmbedder, Embedder, OllamaEmbedder, build_embedder
from .engine import IndexEngine, IndexPassResult
from .repository import IndexEntryRepository
from .tokenize import build_index_text, tokenize
from .vectors import VectorIndex, VectorMatch, build_qdrant_client

__all__ = [
    "DeterministicEmbedder",
    "Embedder",
    "IndexEngine",
    "IndexEntryRepository",
    "IndexPassResult",
    "OllamaEmbedder",
    "VectorIndex",
    "VectorMatch",
    "build_embedder",
    "build_index_text",
    "build_qdrant_client",
    "tokenize",
]
