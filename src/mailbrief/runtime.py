"""Component wiring and the long-running service.

The service runs three concurrent loops against one shared database:
- sync: polls the mailbox every ``sync_poll_interval_seconds``
- index: woken after each successful sync pass, or by its own timer
- digest: checks the weekly cadence

Every write is a single transaction, so cancelling the loops at any point
leaves the persisted state at the last fully completed step.
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass, field

import structlog
from qdrant_client import QdrantClient
from sqlalchemy import Engine

from mailbrief.config import Settings
from mailbrief.db import create_db_engine, initialize_schema
from mailbrief.digest import (
    DigestScheduler,
    MailTransport,
    PendingDigestRepository,
    SmtpTransport,
    SqlSubscriberRegistry,
    Summarizer,
    build_summarizer,
)
from mailbrief.index import (
    Embedder,
    IndexEngine,
    IndexEntryRepository,
    VectorIndex,
    build_embedder,
    build_qdrant_client,
)
from mailbrief.mailbox import GmailMailbox, Mailbox
from mailbrief.store import MessageStore, PipelineState
from mailbrief.sync import SyncEngine, SyncResult

logger = structlog.get_logger()


@dataclass
class Components:
    settings: Settings
    engine: Engine
    store: MessageStore
    state: PipelineState
    sync: SyncEngine
    index: IndexEngine
    subscribers: SqlSubscriberRegistry
    pending: PendingDigestRepository
    digest: DigestScheduler
    index_trigger: asyncio.Event = field(default_factory=asyncio.Event)


def build_components(
    settings: Settings,
    *,
    mailbox: Mailbox | None = None,
    embedder: Embedder | None = None,
    summarizer: Summarizer | None = None,
    transport: MailTransport | None = None,
    qdrant_client: QdrantClient | None = None,
) -> Components:
    """Create the schema (if needed) and every component from settings.

    Collaborators can be injected; anything not given is built from
    configuration.
    """

    engine = create_db_engine(settings.database_url)
    initialize_schema(engine)

    store = MessageStore(engine)
    state = PipelineState(engine)
    index_trigger = asyncio.Event()

    def wake_indexer(result: SyncResult) -> None:
        index_trigger.set()

    sync = SyncEngine(
        store,
        mailbox or GmailMailbox(settings),
        settings=settings,
        on_pass_complete=wake_indexer,
    )
    index = IndexEngine(
        store,
        IndexEntryRepository(engine),
        VectorIndex(qdrant_client or build_qdrant_client(settings), settings.qdrant_collection_prefix),
        embedder or build_embedder(settings),
        state,
        settings=settings,
    )
    subscribers = SqlSubscriberRegistry(engine)
    pending = PendingDigestRepository(engine)
    digest = DigestScheduler(
        engine,
        store,
        subscribers,
        pending,
        summarizer or build_summarizer(settings),
        transport or SmtpTransport(settings),
        state,
        index=index,
        settings=settings,
    )
    return Components(
        settings=settings,
        engine=engine,
        store=store,
        state=state,
        sync=sync,
        index=index,
        subscribers=subscribers,
        pending=pending,
        digest=digest,
        index_trigger=index_trigger,
    )


class Service:
    """Runs the sync, index and digest loops until stopped or a loop fails fatally."""

    def __init__(self, components: Components) -> None:
        self.components = components
        self._stop = asyncio.Event()

    def stop(self) -> None:
        logger.info("service_stop_requested")
        self._stop.set()

    async def run(self, *, install_signal_handlers: bool = True) -> None:
        """Run until :meth:`stop` is called or a loop raises.

        Raises:
            AuthenticationError: The sync loop stopped on rejected credentials.
        """

        c = self.components
        if install_signal_handlers:
            self._install_signal_handlers()

        tasks = [
            asyncio.create_task(c.sync.run_forever(), name="sync"),
            asyncio.create_task(c.index.run_forever(c.index_trigger), name="index"),
            asyncio.create_task(c.digest.run_forever(), name="digest"),
        ]
        stopper = asyncio.create_task(self._stop.wait(), name="stop")
        logger.info("service_started", loops=[t.get_name() for t in tasks])

        try:
            done, _ = await asyncio.wait([*tasks, stopper], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in [*tasks, stopper]:
                task.cancel()
            await asyncio.gather(*tasks, stopper, return_exceptions=True)

        for task in done:
            if task is stopper or task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                logger.error("service_loop_failed", loop=task.get_name(), error=str(exc))
                raise exc

        logger.info("service_stopped")

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform / not in the main thread.
                logger.debug("signal_handler_unavailable", signal=sig.name)
