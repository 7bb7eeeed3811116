"""IndexEngine: keeps search entries in step with the message store.

Per message, in order:
1) Tokenize subject/sender/body into lexical terms
2) Embed the same text (timeout + bounded retry)
3) Upsert the vector point (when an embedding was produced)
4) Upsert the entry row and its terms in one SQL transaction

The index watermark moves only after every message of a batch went through
step (4), so a restart repeats at most one batch and the upserts absorb it.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from mailbrief.config import Settings
from mailbrief.exceptions import ConfigurationError, DataIntegrityError, MailbriefError, TransientError
from mailbrief.index.embedding import Embedder
from mailbrief.index.repository import IndexEntryRepository
from mailbrief.index.tokenize import build_index_text, tokenize
from mailbrief.index.vectors import VectorIndex
from mailbrief.models import IndexEntry, Message, SearchHit
from mailbrief.store.kv import PipelineState
from mailbrief.store.messages import MessageStore
from mailbrief.utils import ExponentialBackoff, retry_on_failure

logger = structlog.get_logger()

SCORE_PRECISION = 6


@dataclass
class IndexPassResult:
    batches: int = 0
    indexed: int = 0
    embedded: int = 0
    pending: int = 0
    dropped: int = 0
    watermark: int = 0


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


class IndexEngine:
    """Derives lexical and vector entries from stored messages and serves hybrid search."""

    def __init__(
        self,
        store: MessageStore,
        entries: IndexEntryRepository,
        vectors: VectorIndex,
        embedder: Embedder,
        state: PipelineState,
        settings: Settings | None = None,
    ) -> None:
        from mailbrief.config import get_settings

        self.settings = settings or get_settings()
        self.store = store
        self.entries = entries
        self.vectors = vectors
        self.embedder = embedder
        self.state = state

    @property
    def model_version(self) -> str:
        return self.embedder.model_version

    async def run_pass(self) -> IndexPassResult:
        """Index every message above the watermark, one batch at a time."""

        result = IndexPassResult(watermark=await asyncio.to_thread(self.state.get_index_watermark))
        batch_size = self.settings.index_batch_size

        while True:
            batch = await asyncio.to_thread(self.store.get_since, result.watermark, limit=batch_size)
            if not batch:
                break

            outcomes = await self._index_messages(batch)
            result.batches += 1
            result.indexed += len(outcomes)
            result.embedded += sum(1 for embedded in outcomes if embedded)
            result.pending += sum(1 for embedded in outcomes if not embedded)

            result.watermark = max(m.sequence for m in batch if m.sequence is not None)
            await asyncio.to_thread(self.state.set_index_watermark, result.watermark)

            logger.info(
                "index_batch_committed",
                batch=result.batches,
                messages=len(batch),
                pending=result.pending,
                watermark=result.watermark,
            )

            if len(batch) < batch_size:
                break

        return result

    async def refresh_pass(self) -> IndexPassResult:
        """Re-embed pending or stale entries and drop dangling ones.

        Bounded by ``reembed_batch_size`` so a model change is absorbed over
        several cycles instead of all at once.
        """

        result = IndexPassResult(watermark=await asyncio.to_thread(self.state.get_index_watermark))
        result.dropped = await self.drop_orphans()

        limit = self.settings.reembed_batch_size
        if limit <= 0:
            return result

        stale = await asyncio.to_thread(self.entries.needing_embedding, self.model_version, limit)
        if not stale:
            return result

        by_sequence = await asyncio.to_thread(
            self.store.get_by_sequences, [e.message_sequence for e in stale]
        )
        messages: list[Message] = []
        previous: dict[int, IndexEntry] = {}
        for entry in stale:
            message = by_sequence.get(entry.message_sequence)
            if message is None:
                await self._drop_dangling(entry.message_sequence, entry.provider_id, reason="message_missing")
                result.dropped += 1
                continue
            messages.append(message)
            previous[entry.message_sequence] = entry

        outcomes = await self._index_messages(messages, previous=previous)
        result.batches = 1
        result.indexed = len(outcomes)
        result.embedded = sum(1 for embedded in outcomes if embedded)
        result.pending = sum(1 for embedded in outcomes if not embedded)

        logger.info(
            "index_refresh_done",
            model_version=self.model_version,
            reembedded=result.embedded,
            still_pending=result.pending,
            dropped=result.dropped,
        )
        return result

    async def drop_orphans(self) -> int:
        orphans = await asyncio.to_thread(self.entries.orphaned)
        for entry in orphans:
            await self._drop_dangling(entry.message_sequence, entry.provider_id, reason="message_missing")
        return len(orphans)

    async def run_forever(self, trigger: asyncio.Event | None = None) -> None:
        """Index whenever ``trigger`` is set or the poll interval elapses."""

        s = self.settings
        trigger = trigger or asyncio.Event()
        backoff = ExponentialBackoff(
            initial=s.backoff_initial_seconds,
            maximum=s.backoff_max_seconds,
            multiplier=s.backoff_multiplier,
        )
        logger.info("index_loop_started", poll_interval=s.index_poll_interval_seconds)

        while True:
            trigger.clear()
            try:
                await self.run_pass()
                await self.refresh_pass()
            except Exception as exc:  # noqa: BLE001 - the loop should keep indexing
                delay = backoff.next_delay()
                logger.exception("index_pass_failed", error=str(exc), retry_in=delay)
                await asyncio.sleep(delay)
                continue

            backoff.reset()
            try:
                await asyncio.wait_for(trigger.wait(), timeout=s.index_poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def search(self, query: str, k: int = 10) -> list[str]:
        """Return up to ``k`` provider message ids, best match first."""

        return [hit.provider_id for hit in await self.search_hits(query, k)]

    async def search_hits(self, query: str, k: int = 10) -> list[SearchHit]:
        """Hybrid lexical + vector search.

        Lexical score is the fraction of query terms a message contains.
        Vector score is the cosine similarity (clamped at 0) against the
        active model's collection only. The combined score is the higher of
        the two, or a weighted sum when ``search_mode`` is ``weighted``.
        Ties go to the more recently received message, then the higher
        sequence.
        """

        if k <= 0 or not query or not query.strip():
            return []

        terms = tokenize(query)
        candidates = k * self.settings.search_candidate_multiplier

        lexical: dict[int, float] = {}
        if terms:
            matches = await asyncio.to_thread(self.entries.lexical_matches, terms, candidates)
            lexical = {seq: count / len(terms) for seq, count in matches}

        query_vector = await self._embed_query(query)
        vector: dict[int, float] = {}
        point_owner: dict[int, str] = {}
        if query_vector is not None:
            vector_matches = await asyncio.to_thread(
                lambda: self.vectors.query(
                    model_version=self.model_version, vector=query_vector, limit=candidates
                )
            )
            for match in vector_matches:
                vector[match.message_sequence] = max(0.0, match.score)
                point_owner[match.message_sequence] = match.provider_id

        sequences = set(lexical) | set(vector)
        if not sequences:
            return []

        messages = await asyncio.to_thread(self.store.get_by_sequences, sorted(sequences))
        for seq in sorted(sequences - set(messages)):
            await self._drop_dangling(seq, point_owner.get(seq), reason="search_candidate_missing")
            lexical.pop(seq, None)
            vector.pop(seq, None)

        vector_only = [seq for seq in vector if seq not in lexical]
        if terms and vector_only:
            counts = await asyncio.to_thread(self.entries.matched_term_counts, terms, vector_only)
            for seq, count in counts.items():
                lexical[seq] = count / len(terms)

        lexical_only = [seq for seq in lexical if seq not in vector and seq in messages]
        if query_vector is not None and lexical_only:
            provider_ids = [messages[seq].provider_id for seq in lexical_only]
            stored = await asyncio.to_thread(
                lambda: self.vectors.get_vectors(model_version=self.model_version, provider_ids=provider_ids)
            )
            for seq in lexical_only:
                vec = stored.get(messages[seq].provider_id)
                if vec is not None:
                    vector[seq] = max(0.0, cosine_similarity(query_vector, vec))

        hits: list[SearchHit] = []
        for seq, message in messages.items():
            lex = round(lexical.get(seq, 0.0), SCORE_PRECISION)
            vec = round(vector.get(seq, 0.0), SCORE_PRECISION)
            score = round(self._combine(lex, vec), SCORE_PRECISION)
            if score <= 0.0:
                continue
            hits.append(
                SearchHit(
                    provider_id=message.provider_id,
                    message_sequence=seq,
                    received_at=message.received_at,
                    lexical_score=lex,
                    vector_score=vec,
                    score=score,
                )
            )

        hits.sort(key=lambda h: (-h.score, -_timestamp(h.received_at), -h.message_sequence))
        return hits[:k]

    def stats(self) -> dict[str, int | str]:
        return {
            "model_version": self.model_version,
            "entries": self.entries.count(),
            "needing_embedding": self.entries.count_needing_embedding(self.model_version),
            "vectors": self.vectors.count(self.model_version),
            "watermark": self.state.get_index_watermark(),
        }

    def _combine(self, lexical: float, vector: float) -> float:
        if self.settings.search_mode == "weighted":
            w = self.settings.search_lexical_weight
            return w * lexical + (1.0 - w) * vector
        return max(lexical, vector)

    async def _index_messages(
        self,
        messages: list[Message],
        previous: dict[int, IndexEntry] | None = None,
    ) -> list[bool]:
        semaphore = asyncio.Semaphore(self.settings.index_workers)
        previous = previous or {}

        async def worker(message: Message) -> bool:
            async with semaphore:
                return await self._index_one(message, previous.get(message.sequence or 0))

        results = await asyncio.gather(*(worker(m) for m in messages), return_exceptions=True)
        for outcome in results:
            if isinstance(outcome, BaseException):
                raise outcome
        return [bool(r) for r in results]

    async def _index_one(self, message: Message, previous: IndexEntry | None) -> bool:
        if message.sequence is None:
            raise DataIntegrityError(f"Message {message.provider_id} has no sequence")

        text = build_index_text(message.subject, message.body_text, message.sender)
        tokens = tokenize(text)
        attempts = (previous.attempts if previous else 0) + 1

        vector = await self._embed_document(message, text)
        if vector is not None:
            await asyncio.to_thread(
                lambda: self.vectors.upsert(
                    model_version=self.model_version,
                    dimension=self.embedder.dimension,
                    provider_id=message.provider_id,
                    message_sequence=message.sequence,
                    vector=vector,
                )
            )

        # A failed re-embed keeps the old version so the entry stays flagged as stale.
        model_version = previous.model_version if previous else None
        if vector is not None:
            model_version = self.model_version

        entry = IndexEntry(
            message_sequence=message.sequence,
            provider_id=message.provider_id,
            tokens=tokens,
            model_version=model_version,
            embedding_pending=vector is None,
            attempts=0 if vector is not None else attempts,
            indexed_at=datetime.now(timezone.utc),
        )
        await asyncio.to_thread(self.entries.upsert, entry)
        return vector is not None

    async def _embed_document(self, message: Message, text: str) -> list[float] | None:
        s = self.settings
        embed = retry_on_failure(
            max_retries=s.embedding_max_retries,
            delay=s.backoff_initial_seconds,
            backoff=s.backoff_multiplier,
            max_delay=s.backoff_max_seconds,
            retry_on=(TransientError,),
        )(self._embed_with_timeout)

        try:
            return await embed(text)
        except ConfigurationError:
            raise
        except MailbriefError as exc:
            logger.warning(
                "index_embedding_pending",
                provider_id=message.provider_id,
                sequence=message.sequence,
                error=str(exc),
            )
            return None

    async def _embed_query(self, query: str) -> list[float] | None:
        try:
            return await self._embed_with_timeout(query)
        except MailbriefError as exc:
            logger.warning("search_lexical_only", error=str(exc))
            return None

    async def _embed_with_timeout(self, text: str) -> list[float]:
        timeout = self.settings.embedding_timeout_seconds
        try:
            return await asyncio.wait_for(self.embedder.embed(text), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TransientError(f"Embedding timed out after {timeout}s") from exc

    async def _drop_dangling(self, sequence: int, provider_id: str | None, *, reason: str) -> None:
        logger.error(
            "index_integrity_violation",
            sequence=sequence,
            provider_id=provider_id,
            reason=reason,
        )
        if provider_id is None:
            entry = await asyncio.to_thread(self.entries.get, sequence)
            provider_id = entry.provider_id if entry is not None else None
        if provider_id is not None:
            await asyncio.to_thread(
                lambda: self.vectors.delete(model_version=self.model_version, provider_ids=[provider_id])
            )
        await asyncio.to_thread(self.entries.delete, sequence)


def _timestamp(dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()
