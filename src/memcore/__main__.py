"""CLI entry point for memcore."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from typing import Awaitable, Callable

from memcore.app import MemcoreApp
from memcore.config import AppConfig, load_config
from memcore.log import setup_logging
from memcore.storage.archive_repo import ArchiveStore
from memcore.storage.database import Database
from memcore.storage.errors import AmbiguousSessionIDError, SessionNotFoundError
from memcore.storage.models import SearchOptions


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    parser.add_argument("-e", "--env", default=".env", help="Path to .env file")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="memcore",
        description="Session archive, episodic memory and background summarizer",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    _add_config_args(subparsers.add_parser("run", help="Start the archive and summarizer"))
    _add_config_args(subparsers.add_parser("config-check", help="Validate configuration"))
    _add_config_args(subparsers.add_parser("stats", help="Show archive statistics"))

    sessions_parser = subparsers.add_parser("sessions", help="List archived sessions")
    _add_config_args(sessions_parser)
    sessions_parser.add_argument("--conversation", default="", help="Filter by conversation ID")
    sessions_parser.add_argument("-n", "--limit", type=int, default=20)

    search_parser = subparsers.add_parser("search", help="Full-text search over the archive")
    _add_config_args(search_parser)
    search_parser.add_argument("query", help="Search terms")
    search_parser.add_argument("-n", "--limit", type=int, default=10)
    search_parser.add_argument("--no-context", action="store_true", help="Show matches only")

    export_parser = subparsers.add_parser("export", help="Export a session as markdown")
    _add_config_args(export_parser)
    export_parser.add_argument("session_id", help="Session ID or unique prefix")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    config = _load(args.config, args.env)
    setup_logging(config.log_level, json=config.log_json)

    match args.command:
        case "config-check":
            _check_config(args.config, config)
        case "run":
            _run(config)
        case "stats":
            _with_archive(config, _print_stats)
        case "sessions":
            _with_archive(config, lambda a: _print_sessions(a, args.conversation, args.limit))
        case "search":
            _with_archive(config, lambda a: _print_search(a, args.query, args.limit, args.no_context))
        case "export":
            _with_archive(config, lambda a: _print_export(a, args.session_id))


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'python install.py' first or copy config.example.yaml to config.yaml")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, config: AppConfig) -> None:
    print(f"Configuration valid: {config_path}")
    print(f"  Data directory: {config.data_dir}")
    print(f"  Storage: {config.storage.db_path} (fts={config.storage.fts_enabled})")
    print(f"  Timezone: {config.timezone}")
    print(f"  Default model: {config.default_model}")
    for model in config.models:
        print(f"    - {model.name} ({model.provider}, quality={model.quality})")
    summarizer = config.summarizer
    state = "enabled" if summarizer.enabled else "disabled"
    print(f"  Summarizer: {state}, every {summarizer.interval_seconds:g}s, batch {summarizer.batch_size}")
    print(f"  Episodic: {config.episodic.history_tokens} tokens, {config.episodic.lookback_days} days")
    print(f"  Capabilities: {', '.join(sorted(config.capabilities)) or '(none)'}")
    print(f"  Path prefixes: {', '.join(sorted(config.paths)) or '(none)'}")


def _with_archive(config: AppConfig, action: Callable[[ArchiveStore], Awaitable[None]]) -> None:
    async def _main() -> None:
        db = Database(config.storage.db_path, fts_enabled=config.storage.fts_enabled)
        await db.initialize()
        try:
            await action(
                ArchiveStore(
                    db,
                    silence_minutes=config.archive.silence_minutes,
                    max_context_messages=config.archive.max_context_messages,
                    max_context_minutes=config.archive.max_context_minutes,
                )
            )
        finally:
            await db.close()

    try:
        asyncio.run(_main())
    except (SessionNotFoundError, AmbiguousSessionIDError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


async def _print_stats(archive: ArchiveStore) -> None:
    stats = await archive.stats()
    print(f"Sessions:   {stats.total_sessions} ({stats.open_sessions} open, {stats.summarized_sessions} summarized)")
    print(f"Messages:   {stats.total_messages}")
    for role, count in sorted(stats.messages_by_role.items()):
        print(f"  {role:<10}{count}")
    print(f"Tool calls: {stats.total_tool_calls}")
    if stats.oldest_message and stats.newest_message:
        print(f"Range:      {stats.oldest_message:%Y-%m-%d} → {stats.newest_message:%Y-%m-%d}")


async def _print_sessions(archive: ArchiveStore, conversation_id: str, limit: int) -> None:
    for s in await archive.list_sessions(conversation_id, limit):
        ended = s.ended_at.strftime("%H:%M") if s.ended_at else "active"
        title = s.title or s.summary or ""
        print(f"{s.short_id}  {s.started_at:%Y-%m-%d %H:%M} → {ended:<6} {s.message_count:>4} msgs  {title}")


async def _print_search(archive: ArchiveStore, query: str, limit: int, no_context: bool) -> None:
    results = await archive.search(SearchOptions(query=query, limit=limit, no_context=no_context))
    if not results:
        print("No results.")
        return
    for result in results:
        match = result.message
        print(f"--- session {match.session_id[:8]} {result.session_title}".rstrip())
        for msg in result.context or [match]:
            marker = ">>>" if msg.id == match.id else "   "
            print(f"{marker} [{msg.timestamp:%Y-%m-%d %H:%M:%S}] {msg.role}: {msg.content}")
        print()


async def _print_export(archive: ArchiveStore, session_id: str) -> None:
    session = await archive.resolve_session_id(session_id)
    print(await archive.export_session_markdown(session.id), end="")


def _run(config: AppConfig) -> None:
    """Start the application and block until SIGINT/SIGTERM."""

    async def _async_main() -> None:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _signal_handler() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_handler)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(_signal_handler))

        app = MemcoreApp(config)
        await app.start()
        try:
            await stop_event.wait()
        finally:
            await app.stop()

    try:
        asyncio.run(_async_main())
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
