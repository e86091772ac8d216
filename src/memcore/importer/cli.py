"""CLI entry point for importing OpenClaw sessions into the archive."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from memcore.importer.openclaw import (
    SOURCE_TYPE,
    ImportParseError,
    ParsedSession,
    find_session_files,
    import_sessions,
    parse_session_file,
)
from memcore.log import get_logger, setup_logging
from memcore.storage.archive_repo import ArchiveStore
from memcore.storage.database import Database
from memcore.storage.models import short_id

logger = get_logger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="openclaw-import",
        description="Import OpenClaw session logs into the memcore archive",
    )
    parser.add_argument("-openclaw", "--openclaw", dest="openclaw", help="Path to .openclaw directory")
    parser.add_argument(
        "-data", "--data", dest="data", help="Data directory (archive.db is created there)"
    )
    parser.add_argument(
        "-dry-run", "--dry-run", dest="dry_run", action="store_true",
        help="Parse and report without writing to the database",
    )
    parser.add_argument(
        "-purge", "--purge", dest="purge", action="store_true",
        help="Remove previously imported OpenClaw data before importing",
    )
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Verbose output")
    return parser


def _parse_all(files: list[Path]) -> list[ParsedSession]:
    sessions = []
    for path in files:
        try:
            sessions.append(parse_session_file(path))
        except (OSError, ImportParseError) as e:
            logger.warning("session_file_parse_failed", file=path.name, error=str(e))
    return sessions


def _print_dry_run(sessions: list[ParsedSession]) -> None:
    print("\n=== Dry Run Summary ===")
    print(f"Sessions:   {len(sessions)}")
    print(f"Messages:   {sum(len(s.messages) for s in sessions)}")
    print(f"Tool Calls: {sum(len(s.tool_calls) for s in sessions)}")
    print("\nSessions by date:")
    for s in sessions:
        started = s.started_at.strftime("%Y-%m-%d %H:%M:%S") if s.started_at else "unknown"
        ended = s.ended_at.strftime("%H:%M:%S") if s.ended_at else "active"
        print(
            f"  {short_id(s.id)}  {started} → {ended}  "
            f"{len(s.messages)} msgs, {len(s.tool_calls)} tools"
        )


async def _import(data_dir: Path, sessions: list[ParsedSession], purge: bool) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    archive_path = data_dir / "archive.db"
    db = Database(str(archive_path))
    await db.initialize()
    try:
        archive = ArchiveStore(db)
        if purge:
            removed = await archive.purge_imported(SOURCE_TYPE)
            logger.info("previous_import_purged", sessions_removed=removed)

        stats = await import_sessions(archive, sessions)
        logger.info(
            "import_complete",
            imported=stats.imported,
            skipped=stats.skipped,
            failed=stats.failed,
            archive_path=str(archive_path),
        )

        totals = await archive.stats()
        print("\n=== Import Complete ===")
        print(f"Archive: {archive_path}")
        print(f"Sessions imported: {stats.imported} / {len(sessions)}")
        print(f"Sessions skipped (already imported): {stats.skipped}")
        print(f"Total archived messages: {totals.total_messages}")
        print(f"Total archived tool calls: {totals.total_tool_calls}")
    finally:
        await db.close()


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.openclaw or not args.data:
        print(
            "Usage: openclaw-import -openclaw /path/to/.openclaw -data /path/to/data",
            file=sys.stderr,
        )
        parser.print_help(sys.stderr)
        sys.exit(1)

    setup_logging("DEBUG" if args.verbose else "INFO")

    try:
        files, deleted = find_session_files(Path(args.openclaw).expanduser())
    except FileNotFoundError as e:
        logger.error("sessions_dir_missing", error=str(e))
        sys.exit(1)
    logger.info("session_files_found", active=len(files), deleted=deleted)

    sessions = _parse_all(files)
    logger.info(
        "sessions_parsed",
        sessions=len(sessions),
        messages=sum(len(s.messages) for s in sessions),
        tool_calls=sum(len(s.tool_calls) for s in sessions),
    )

    if args.dry_run:
        _print_dry_run(sessions)
        return

    try:
        asyncio.run(_import(Path(args.data).expanduser(), sessions, args.purge))
    except Exception as e:
        logger.error("import_failed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
