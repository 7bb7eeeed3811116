"""Read-only HTTP surface: health, pipeline status and search."""

from __future__ import annotations

import asyncio
from datetime import datetime

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel

from mailbrief.runtime import Components


class CursorStatus(BaseModel):
    token: str | None
    sequence: int
    updated_at: datetime | None


class IndexStatus(BaseModel):
    model_version: str
    watermark: int
    entries: int
    needing_embedding: int


class StatusResponse(BaseModel):
    message_count: int
    latest_sequence: int
    cursor: CursorStatus
    index: IndexStatus
    pending_digests: int
    active_subscribers: int
    last_digest_cycle_at: datetime | None


class SearchResult(BaseModel):
    provider_id: str
    sequence: int
    subject: str
    sender: str
    received_at: datetime
    score: float
    lexical_score: float
    vector_score: float


class SearchResponse(BaseModel):
    query: str
    results: list[SearchResult]


def _status(c: Components) -> StatusResponse:
    cursor = c.store.load_cursor()
    return StatusResponse(
        message_count=c.store.count(),
        latest_sequence=c.store.latest_sequence(),
        cursor=CursorStatus(token=cursor.token, sequence=cursor.sequence, updated_at=cursor.updated_at),
        index=IndexStatus(
            model_version=c.index.model_version,
            watermark=c.state.get_index_watermark(),
            entries=c.index.entries.count(),
            needing_embedding=c.index.entries.count_needing_embedding(c.index.model_version),
        ),
        pending_digests=c.pending.count_pending(),
        active_subscribers=len(c.subscribers.list_active()),
        last_digest_cycle_at=c.state.get_last_digest_cycle_at(),
    )


def create_app(components: Components | None = None) -> FastAPI:
    """Build the application; components are created from settings when not given."""

    if components is None:
        from mailbrief.config import get_settings
        from mailbrief.runtime import build_components

        components = build_components(get_settings())

    app = FastAPI(title="mailbrief")
    app.state.components = components

    def _components(request: Request) -> Components:
        return request.app.state.components

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/status", response_model=StatusResponse)
    async def status(request: Request) -> StatusResponse:
        return await asyncio.to_thread(_status, _components(request))

    @app.get("/search", response_model=SearchResponse)
    async def search(
        request: Request,
        q: str = Query(..., min_length=1),
        k: int = Query(10, ge=1, le=100),
    ) -> SearchResponse:
        c = _components(request)
        if not q.strip():
            raise HTTPException(status_code=422, detail="Query must not be blank")

        hits = await c.index.search_hits(q, k)
        messages = await asyncio.to_thread(c.store.get_by_sequences, [h.message_sequence for h in hits])

        results: list[SearchResult] = []
        for hit in hits:
            message = messages.get(hit.message_sequence)
            if message is None:
                continue
            results.append(
                SearchResult(
                    provider_id=hit.provider_id,
                    sequence=hit.message_sequence,
                    subject=message.subject,
                    sender=message.sender,
                    received_at=hit.received_at,
                    score=hit.score,
                    lexical_score=hit.lexical_score,
                    vector_score=hit.vector_score,
                )
            )
        return SearchResponse(query=q, results=results)

    return app
