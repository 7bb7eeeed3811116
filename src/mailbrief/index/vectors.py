"""Qdrant-backed vector index.

Each embedding model version gets its own collection, so vectors produced by
different models are never compared with each other. Point ids are derived
deterministically from the provider message id, which makes every upsert
idempotent.
"""

from __future__ import annotations

import re
import threading
import uuid
from dataclasses import dataclass

import structlog
from qdrant_client import QdrantClient
from qdrant_client.models import Distance, PointIdsList, PointStruct, VectorParams

from mailbrief.config import Settings
from mailbrief.exceptions import ConfigurationError

logger = structlog.get_logger()

_SLUG_RE = re.compile(r"[^a-zA-Z0-9_]+")


@dataclass(frozen=True)
class VectorMatch:
    provider_id: str
    message_sequence: int
    score: float


def point_id_for_provider_id(provider_id: str) -> str:
    """Return the deterministic Qdrant point id for a provider message id."""

    return str(uuid.uuid5(uuid.NAMESPACE_URL, provider_id))


def build_qdrant_client(settings: Settings) -> QdrantClient:
    if settings.qdrant_host:
        return QdrantClient(host=settings.qdrant_host, port=settings.qdrant_port)
    if settings.qdrant_path == ":memory:":
        return QdrantClient(location=":memory:")
    return QdrantClient(path=settings.qdrant_path)


class VectorIndex:
    """Vector storage and cosine similarity queries."""

    def __init__(self, client: QdrantClient, collection_prefix: str = "mailbrief") -> None:
        self._client = client
        self._prefix = collection_prefix
        # The embedded Qdrant client is not safe for concurrent use.
        self._lock = threading.Lock()
        self._ready: set[str] = set()

    def collection_name(self, model_version: str) -> str:
        return f"{self._prefix}_{_SLUG_RE.sub('_', model_version).strip('_').lower()}"

    def ensure_collection(self, model_version: str, dimension: int) -> str:
        name = self.collection_name(model_version)
        if name in self._ready:
            return name

        with self._lock:
            names = [c.name for c in self._client.get_collections().collections]
            if name not in names:
                self._client.create_collection(
                    collection_name=name,
                    vectors_config=VectorParams(size=dimension, distance=Distance.COSINE),
                )
                logger.info("vector_collection_created", collection=name, dimension=dimension)
            else:
                # Validate vector dimension so we don't silently write/query incompatible vectors.
                info = self._client.get_collection(name)
                size = getattr(getattr(info.config.params, "vectors", None), "size", None)
                if size is not None and int(size) != int(dimension):
                    raise ConfigurationError(
                        f"Qdrant collection '{name}' has vector size {size}, but the embedder "
                        f"produces {dimension}."
                    )
            self._ready.add(name)
        return name

    def upsert(
        self,
        *,
        model_version: str,
        dimension: int,
        provider_id: str,
        message_sequence: int,
        vector: list[float],
    ) -> None:
        name = self.ensure_collection(model_version, dimension)
        point = PointStruct(
            id=point_id_for_provider_id(provider_id),
            vector=vector,
            payload={
                "provider_id": provider_id,
                "message_sequence": int(message_sequence),
                "model_version": model_version,
            },
        )
        with self._lock:
            self._client.upsert(collection_name=name, points=[point])

    def query(self, *, model_version: str, vector: list[float], limit: int) -> list[VectorMatch]:
        name = self.collection_name(model_version)
        if name not in self._ready and not self._exists(name):
            return []

        with self._lock:
            response = self._client.query_points(
                collection_name=name,
                query=vector,
                limit=limit,
                with_payload=True,
            )

        matches: list[VectorMatch] = []
        for point in response.points:
            payload = point.payload or {}
            provider_id = payload.get("provider_id")
            sequence = payload.get("message_sequence")
            if provider_id is None or sequence is None:
                continue
            matches.append(
                VectorMatch(
                    provider_id=str(provider_id),
                    message_sequence=int(sequence),
                    score=float(point.score),
                )
            )
        return matches

    def get_vectors(self, *, model_version: str, provider_ids: list[str]) -> dict[str, list[float]]:
        """Fetch stored vectors; ids without a point are absent from the result."""

        name = self.collection_name(model_version)
        if not provider_ids or (name not in self._ready and not self._exists(name)):
            return {}

        with self._lock:
            records = self._client.retrieve(
                collection_name=name,
                ids=[point_id_for_provider_id(p) for p in provider_ids],
                with_payload=True,
                with_vectors=True,
            )

        out: dict[str, list[float]] = {}
        for record in records:
            vec = record.vector
            # Qdrant can return either a list (single unnamed vector) or a dict for named vectors.
            if isinstance(vec, dict):
                vec = next(iter(vec.values()), None)
            provider_id = (record.payload or {}).get("provider_id")
            if isinstance(vec, list) and provider_id is not None:
                out[str(provider_id)] = [float(x) for x in vec]
        return out

    def delete(self, *, model_version: str, provider_ids: list[str]) -> None:
        name = self.collection_name(model_version)
        if not provider_ids or (name not in self._ready and not self._exists(name)):
            return
        with self._lock:
            self._client.delete(
                collection_name=name,
                points_selector=PointIdsList(points=[point_id_for_provider_id(p) for p in provider_ids]),
            )

    def count(self, model_version: str) -> int:
        name = self.collection_name(model_version)
        if name not in self._ready and not self._exists(name):
            return 0
        with self._lock:
            return int(self._client.count(collection_name=name, exact=True).count)

    def _exists(self, name: str) -> bool:
        with self._lock:
            names = [c.name for c in self._client.get_collections().collections]
        if name in names:
            self._ready.add(name)
            return True
        return False
