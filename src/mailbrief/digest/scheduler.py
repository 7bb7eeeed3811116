"""Weekly digest scheduler.

Per subscriber, per cycle:

    IDLE -> COLLECTING -> SUMMARIZING -> RECORDING -> SENDING -> IDLE
    COLLECTING -> IDLE                  (nothing new)
    IDLE -> SENDING                     (a pending record from an earlier cycle)

The cycle snapshot (latest message sequence) is taken once, before any
subscriber is processed. Messages stored after it belong to the next cycle.

The pending record written in RECORDING is the durability point: the
watermark moves to its ``target_sequence`` only in the transaction that
marks it sent, and while it is pending the next cycle re-sends the stored
content instead of summarizing again.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import structlog
from sqlalchemy import Engine

from mailbrief.config import Settings
from mailbrief.digest.pending import PendingDigestRepository
from mailbrief.digest.subscribers import SqlSubscriberRegistry
from mailbrief.digest.summarizer import Summarizer
from mailbrief.digest.transport import MailTransport
from mailbrief.index.engine import IndexEngine
from mailbrief.models import Message, PendingDigest, Subscriber, SubscriberContext
from mailbrief.store.kv import PipelineState
from mailbrief.store.messages import MessageStore
from mailbrief.utils import ExponentialBackoff

logger = structlog.get_logger()

# Upper bound on one sleep of the digest loop, so a changed interval or a
# cleared cadence marker is noticed without waiting a whole week.
MAX_IDLE_SLEEP_SECONDS = 3600.0


class DigestState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    SUMMARIZING = "summarizing"
    RECORDING = "recording"
    SENDING = "sending"


class DigestStatus(str, Enum):
    SENT = "sent"
    EMPTY = "empty"
    SUMMARIZE_FAILED = "summarize_failed"
    SEND_FAILED = "send_failed"
    ERROR = "error"


@dataclass
class DigestOutcome:
    """What happened to one subscriber in one cycle."""

    subscriber_id: int
    address: str
    status: DigestStatus | None = None
    message_count: int = 0
    from_sequence: int = 0
    target_sequence: int = 0
    resent_pending: bool = False
    error: str | None = None
    states: list[DigestState] = field(default_factory=lambda: [DigestState.IDLE])

    def enter(self, state: DigestState) -> None:
        self.states.append(state)
        logger.debug("digest_state", subscriber_id=self.subscriber_id, state=state.value)

    def finish(self, status: DigestStatus, error: str | None = None) -> DigestOutcome:
        self.status = status
        self.error = error
        if self.states[-1] is not DigestState.IDLE:
            self.states.append(DigestState.IDLE)
        return self


@dataclass
class CycleReport:
    snapshot: int
    started_at: datetime
    finished_at: datetime | None = None
    outcomes: list[DigestOutcome] = field(default_factory=list)

    def count(self, status: DigestStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def sent(self) -> int:
        return self.count(DigestStatus.SENT)

    @property
    def failed(self) -> int:
        return sum(
            1
            for o in self.outcomes
            if o.status in (DigestStatus.SUMMARIZE_FAILED, DigestStatus.SEND_FAILED, DigestStatus.ERROR)
        )


class DigestScheduler:
    """Compiles and delivers per-subscriber digests exactly once per window."""

    def __init__(
        self,
        engine: Engine,
        store: MessageStore,
        registry: SqlSubscriberRegistry,
        pending: PendingDigestRepository,
        summarizer: Summarizer,
        transport: MailTransport,
        state: PipelineState,
        index: IndexEngine | None = None,
        settings: Settings | None = None,
    ) -> None:
        from mailbrief.config import get_settings

        self.settings = settings or get_settings()
        self.engine = engine
        self.store = store
        self.registry = registry
        self.pending = pending
        self.summarizer = summarizer
        self.transport = transport
        self.state = state
        self.index = index

    async def run_cycle(self) -> CycleReport:
        """Run one digest cycle over all active subscribers."""

        snapshot = await asyncio.to_thread(self.store.latest_sequence)
        subscribers = await asyncio.to_thread(self.registry.list_active)
        report = CycleReport(snapshot=snapshot, started_at=datetime.now(timezone.utc))
        logger.info("digest_cycle_start", snapshot=snapshot, subscribers=len(subscribers))

        semaphore = asyncio.Semaphore(self.settings.digest_concurrency)

        async def guarded(subscriber: Subscriber) -> DigestOutcome:
            async with semaphore:
                try:
                    return await self.process_subscriber(subscriber, snapshot)
                except Exception as exc:  # noqa: BLE001 - one subscriber must not stop the others
                    logger.exception(
                        "digest_subscriber_crashed", subscriber_id=subscriber.id, error=str(exc)
                    )
                    return DigestOutcome(subscriber_id=subscriber.id, address=subscriber.address).finish(
                        DigestStatus.ERROR, str(exc)
                    )

        report.outcomes = list(await asyncio.gather(*(guarded(s) for s in subscribers)))
        report.finished_at = datetime.now(timezone.utc)
        await asyncio.to_thread(self.state.set_last_digest_cycle_at, report.finished_at)

        logger.info(
            "digest_cycle_done",
            snapshot=snapshot,
            sent=report.sent,
            empty=report.count(DigestStatus.EMPTY),
            failed=report.failed,
        )
        return report

    async def process_subscriber(self, subscriber: Subscriber, snapshot: int) -> DigestOutcome:
        outcome = DigestOutcome(subscriber_id=subscriber.id, address=subscriber.address)
        log = logger.bind(subscriber_id=subscriber.id)

        existing = await asyncio.to_thread(self.pending.get_pending, subscriber.id)
        if existing is not None:
            log.info("digest_pending_resend", target_sequence=existing.target_sequence, attempts=existing.attempts)
            outcome.resent_pending = True
            return await self._send(subscriber, existing, outcome)

        outcome.enter(DigestState.COLLECTING)
        watermark = await asyncio.to_thread(self.registry.get_watermark, subscriber.id)
        limit = self.settings.digest_max_messages
        messages = await asyncio.to_thread(self.store.get_since, watermark, up_to=snapshot, limit=limit)
        outcome.from_sequence = watermark
        if not messages:
            outcome.target_sequence = watermark
            log.info("digest_nothing_new", watermark=watermark, snapshot=snapshot)
            return outcome.finish(DigestStatus.EMPTY)

        # A truncated window ends at its last included message; the rest waits for the next cycle.
        target = snapshot if len(messages) < limit else int(messages[-1].sequence or snapshot)
        outcome.target_sequence = target
        outcome.message_count = len(messages)

        context = SubscriberContext(
            subscriber_id=subscriber.id,
            address=subscriber.address,
            display_name=subscriber.display_name,
            topics=subscriber.topics,
            highlight_ids=await self._highlights(subscriber, messages),
            window_start=watermark,
            window_end=target,
        )

        outcome.enter(DigestState.SUMMARIZING)
        timeout = self.settings.summarization_timeout_seconds
        try:
            content = await asyncio.wait_for(self.summarizer.summarize(messages, context), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("digest_summarize_timeout", timeout=timeout)
            return outcome.finish(DigestStatus.SUMMARIZE_FAILED, f"summarization timed out after {timeout}s")
        except Exception as exc:  # noqa: BLE001 - any summarizer failure aborts this subscriber only
            log.warning("digest_summarize_failed", error=str(exc))
            return outcome.finish(DigestStatus.SUMMARIZE_FAILED, str(exc))

        outcome.enter(DigestState.RECORDING)
        record = PendingDigest(
            subscriber_id=subscriber.id,
            content=content,
            from_sequence=watermark,
            target_sequence=target,
            message_count=len(messages),
        )
        recorded = await asyncio.to_thread(self.pending.record, record)
        if not recorded:
            # Another run recorded first; deliver what it stored.
            stored = await asyncio.to_thread(self.pending.get_pending, subscriber.id)
            if stored is None:
                return outcome.finish(DigestStatus.ERROR, "pending digest vanished while recording")
            record = stored
        log.info("digest_recorded", from_sequence=watermark, target_sequence=target, messages=len(messages))

        return await self._send(subscriber, record, outcome)

    async def clear_pending(self, subscriber_id: int) -> bool:
        cleared = await asyncio.to_thread(self.pending.clear, subscriber_id)
        logger.info("digest_pending_cleared", subscriber_id=subscriber_id, cleared=cleared)
        return cleared

    async def run_forever(self) -> None:
        """Run a cycle whenever the digest interval has elapsed since the last one."""

        s = self.settings
        backoff = ExponentialBackoff(
            initial=s.backoff_initial_seconds,
            maximum=s.backoff_max_seconds,
            multiplier=s.backoff_multiplier,
        )
        logger.info("digest_loop_started", interval=s.digest_interval_seconds)

        while True:
            due_in = await asyncio.to_thread(self.seconds_until_due)
            if due_in > 0:
                await asyncio.sleep(min(due_in, MAX_IDLE_SLEEP_SECONDS))
                continue

            try:
                await self.run_cycle()
            except Exception as exc:  # noqa: BLE001 - the loop should keep scheduling
                delay = backoff.next_delay()
                logger.exception("digest_cycle_failed", error=str(exc), retry_in=delay)
                await asyncio.sleep(delay)
                continue
            backoff.reset()

    def seconds_until_due(self, now: datetime | None = None) -> float:
        last = self.state.get_last_digest_cycle_at()
        if last is None:
            return 0.0
        now = now or datetime.now(timezone.utc)
        elapsed = (now - last).total_seconds()
        return max(0.0, self.settings.digest_interval_seconds - elapsed)

    async def _highlights(self, subscriber: Subscriber, messages: list[Message]) -> list[str]:
        if not subscriber.topics or self.index is None:
            return []

        collected = {m.provider_id for m in messages}
        try:
            ranked = await self.index.search(" ".join(subscriber.topics), k=len(messages))
        except Exception as exc:  # noqa: BLE001 - highlights are optional
            logger.warning("digest_highlights_unavailable", subscriber_id=subscriber.id, error=str(exc))
            return []
        return [pid for pid in ranked if pid in collected]

    async def _send(self, subscriber: Subscriber, record: PendingDigest, outcome: DigestOutcome) -> DigestOutcome:
        outcome.enter(DigestState.SENDING)
        outcome.from_sequence = record.from_sequence
        outcome.target_sequence = record.target_sequence
        outcome.message_count = record.message_count
        timeout = self.settings.delivery_timeout_seconds

        try:
            receipt = await asyncio.wait_for(
                self.transport.send(subscriber.address, record.content), timeout=timeout
            )
        except Exception as exc:  # noqa: BLE001 - the pending record keeps the digest for a retry
            error = f"send timed out after {timeout}s" if isinstance(exc, asyncio.TimeoutError) else str(exc)
            await asyncio.to_thread(self.pending.record_failure, subscriber.id, error)
            logger.warning(
                "digest_send_failed",
                subscriber_id=subscriber.id,
                attempts=record.attempts + 1,
                error=error,
            )
            return outcome.finish(DigestStatus.SEND_FAILED, error)

        await asyncio.to_thread(self._commit_sent, subscriber.id, record.target_sequence)
        logger.info(
            "digest_sent",
            subscriber_id=subscriber.id,
            address=subscriber.address,
            message_id=receipt.message_id,
            target_sequence=record.target_sequence,
            messages=record.message_count,
        )
        return outcome.finish(DigestStatus.SENT)

    def _commit_sent(self, subscriber_id: int, target_sequence: int) -> None:
        with self.engine.begin() as conn:
            self.registry.set_watermark(subscriber_id, target_sequence, conn=conn)
            self.pending.mark_sent(subscriber_id, conn)
