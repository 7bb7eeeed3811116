"""Command-line interface for mailbrief.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import sys

import structlog

from mailbrief import __version__
from mailbrief.config import Settings, get_settings
from mailbrief.exceptions import MailbriefError
from mailbrief.logging_config import configure_logging
from mailbrief.runtime import Components, Service, build_components

logger = structlog.get_logger()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mailbrief", description="Mailbox sync, search and weekly digests")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Create the database schema and vector collection")

    sync_parser = subparsers.add_parser("sync", help="Pull new messages from the mailbox")
    sync_parser.add_argument("--loop", action="store_true", help="Keep polling until interrupted")
    sync_parser.add_argument(
        "--full",
        action="store_true",
        help="Forget the stored cursor and bootstrap from the initial sync window",
    )

    index_parser = subparsers.add_parser("index", help="Index messages stored since the last pass")
    index_parser.add_argument(
        "--refresh",
        action="store_true",
        help="Also re-embed pending entries and entries from an older embedding model",
    )

    search_parser = subparsers.add_parser("search", help="Hybrid keyword + semantic search")
    search_parser.add_argument("query", help="Free-text query")
    search_parser.add_argument("--limit", type=int, default=10, help="Max results")

    digest_parser = subparsers.add_parser("digest", help="Weekly digest operations")
    digest_sub = digest_parser.add_subparsers(dest="digest_command", required=True)
    digest_sub.add_parser("run", help="Run one digest cycle now")
    clear_parser = digest_sub.add_parser(
        "clear-pending",
        help="Drop a subscriber's unsent digest (its messages will be summarized again)",
    )
    clear_parser.add_argument("subscriber_id", type=int, help="Subscriber id")

    subparsers.add_parser("stats", help="Show store, index and digest counters")
    subparsers.add_parser("serve", help="Run the sync, index and digest loops")

    api_parser = subparsers.add_parser("api", help="Serve the read-only HTTP API")
    api_parser.add_argument("--host", default="127.0.0.1")
    api_parser.add_argument("--port", type=int, default=8000)

    return parser


def _cmd_init(c: Components) -> int:
    c.index.vectors.ensure_collection(c.index.model_version, c.index.embedder.dimension)
    print(f"Initialized {c.settings.database_url}")
    print(f"Vector collection: {c.index.vectors.collection_name(c.index.model_version)}")
    return 0


async def _cmd_sync(c: Components, args: argparse.Namespace) -> int:
    if args.full:
        c.store.reset_cursor()

    if args.loop:
        await c.sync.run_forever()
        return 0

    result = await c.sync.run_once()
    print(
        f"Synced {result.pages} page(s): {result.fetched} fetched, {result.inserted} new, "
        f"{result.duplicates} duplicate(s)" + (" [resynced]" if result.resynced else "")
    )
    return 0


async def _cmd_index(c: Components, args: argparse.Namespace) -> int:
    result = await c.index.run_pass()
    print(
        f"Indexed {result.indexed} message(s) in {result.batches} batch(es); "
        f"{result.pending} pending embedding; watermark {result.watermark}"
    )
    if args.refresh:
        refreshed = await c.index.refresh_pass()
        print(
            f"Re-embedded {refreshed.embedded} entries; {refreshed.pending} still pending; "
            f"{refreshed.dropped} dangling dropped"
        )
    return 0


async def _cmd_search(c: Components, args: argparse.Namespace) -> int:
    hits = await c.index.search_hits(args.query, args.limit)
    messages = c.store.get_by_sequences([h.message_sequence for h in hits])
    for h in hits:
        m = messages.get(h.message_sequence)
        if m is None:
            continue
        print(
            f"{h.score:.3f}\t{m.received_at.date().isoformat()}\t{m.sender or '(unknown sender)'}\t"
            f"{m.subject}\t{m.provider_id}"
        )
    return 0


async def _cmd_digest(c: Components, args: argparse.Namespace) -> int:
    if args.digest_command == "clear-pending":
        cleared = await c.digest.clear_pending(args.subscriber_id)
        print("Cleared pending digest" if cleared else "No pending digest for that subscriber")
        return 0 if cleared else 1

    report = await c.digest.run_cycle()
    for o in report.outcomes:
        detail = f" ({o.error})" if o.error else ""
        status = o.status.value if o.status else "unknown"
        print(f"{o.address}\t{status}\t{o.message_count} message(s){detail}")
    print(f"Snapshot {report.snapshot}: {report.sent} sent, {report.failed} failed")
    return 1 if report.failed else 0


def _cmd_stats(c: Components) -> int:
    cursor = c.store.load_cursor()
    stats = c.index.stats()
    print(f"Messages: {c.store.count()} (latest sequence {c.store.latest_sequence()})")
    print(f"Cursor: {cursor.token or '(none)'} at sequence {cursor.sequence}")
    print(
        f"Index: {stats['entries']} entries, {stats['needing_embedding']} needing embedding, "
        f"watermark {stats['watermark']} ({stats['model_version']})"
    )
    print(f"Subscribers: {len(c.subscribers.list_active())} active")
    print(f"Pending digests: {c.pending.count_pending()}")
    last = c.state.get_last_digest_cycle_at()
    print(f"Last digest cycle: {last.isoformat() if last else '(never)'}")
    return 0


def _cmd_api(settings: Settings, args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run(
        "mailbrief.api:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        log_level=settings.log_level.lower(),
    )
    return 0


async def _dispatch(c: Components, args: argparse.Namespace) -> int:
    if args.command == "sync":
        return await _cmd_sync(c, args)
    if args.command == "index":
        return await _cmd_index(c, args)
    if args.command == "search":
        return await _cmd_search(c, args)
    if args.command == "digest":
        return await _cmd_digest(c, args)
    if args.command == "serve":
        await Service(c).run()
        return 0

    logger.error("unknown_command", command=args.command)
    return 2


def main(args: list[str] | None = None) -> int:
    """Main entry point for the mailbrief CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    parser = _build_parser()
    parsed = parser.parse_args(args)

    settings = get_settings()
    configure_logging(settings)
    logger.info("mailbrief_started", version=__version__, command=parsed.command, debug=settings.debug)

    if parsed.command == "api":
        return _cmd_api(settings, parsed)

    try:
        components = build_components(settings)
        if parsed.command == "init":
            return _cmd_init(components)
        if parsed.command == "stats":
            return _cmd_stats(components)
        return asyncio.run(_dispatch(components, parsed))
    except MailbriefError as exc:
        logger.error("command_failed", command=parsed.command, error=str(exc), error_type=type(exc).__name__)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
