#!/usr/bin/env python
"""Command line entry point for the notekeep store."""
import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from notekeep import __version__
from notekeep.backup import BackupManager
from notekeep.config import config
from notekeep.exceptions import ErrorCode, NotekeepError, NoteNotFoundError
from notekeep.models.schema import QuickFilter, SortKey
from notekeep.observability import configure_logging, metrics
from notekeep.services.export_service import export_collection, export_note
from notekeep.services.search_service import SearchService
from notekeep.services.sync_service import SimulatedRemote, SyncService
from notekeep.storage.note_repository import NoteRepository
from notekeep.storage.note_store import NoteStore

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Local-first note store")
    parser.add_argument("--version", action="version", version=f"notekeep {__version__}")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTEKEEP_DATABASE_PATH"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTEKEEP_LOG_LEVEL", "WARNING"),
    )
    parser.add_argument(
        "--log-dir",
        help="Directory for rotating log files",
        type=str,
        default=os.environ.get("NOTEKEEP_LOG_DIR"),
    )
    parser.add_argument(
        "--metrics-file",
        help="Write operation metrics as JSON to this file on exit",
        type=str,
        default=os.environ.get("NOTEKEEP_METRICS_FILE"),
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="Show store and note statistics")

    list_cmd = sub.add_parser("list", help="List notes")
    list_cmd.add_argument(
        "--filter", choices=[f.value for f in QuickFilter], default=QuickFilter.ALL.value
    )
    list_cmd.add_argument("--folder", help="Folder id")
    list_cmd.add_argument("--tag")
    list_cmd.add_argument("--text", help="Substring to look for")
    list_cmd.add_argument(
        "--sort", choices=[s.value for s in SortKey], default=SortKey.MODIFIED.value
    )

    search_cmd = sub.add_parser("search", help="Advanced search")
    search_cmd.add_argument("query")
    search_cmd.add_argument("--format", choices=["json", "csv"])

    sync_cmd = sub.add_parser("sync", help="Run one sync cycle")
    sync_cmd.add_argument("--failure-rate", type=float)

    export_cmd = sub.add_parser("export", help="Export one note or every note")
    export_cmd.add_argument("--note", help="Note id; exports everything when omitted")
    export_cmd.add_argument(
        "--format", default="json", choices=["json", "markdown", "html", "txt"]
    )
    export_cmd.add_argument("--output", help="Write to this file instead of stdout")

    import_cmd = sub.add_parser("import", help="Import a note from a file")
    import_cmd.add_argument("path")
    import_cmd.add_argument("--format", default="json", choices=["json", "markdown"])

    backup_cmd = sub.add_parser("backup", help="Create a backup")
    backup_cmd.add_argument("--label")
    backup_cmd.add_argument("--list", action="store_true", help="List backups instead")

    restore_cmd = sub.add_parser("restore", help="Restore from a backup file")
    restore_cmd.add_argument("path")

    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)


def _print(payload: Any) -> None:
    if isinstance(payload, str):
        print(payload)
    else:
        print(json.dumps(payload, indent=2, default=str))


def _write_output(text: str, output: str = None) -> None:
    if output:
        Path(output).write_text(text, encoding="utf-8")
        logger.info(f"Wrote {output}")
    else:
        print(text)


async def run_command(args) -> int:
    """Open the store, run one command and close the store."""
    store = await NoteStore.open_or_create(config)
    try:
        repository = NoteRepository(store, config)
        await repository.load()

        if args.command == "stats":
            _print({
                "notes": repository.get_statistics(),
                "store": await store.get_statistics(),
                "health": await store.health_check(),
            })

        elif args.command == "list":
            if args.folder and repository.get_folder(args.folder) is None:
                raise NoteNotFoundError(
                    args.folder,
                    message=f"Folder not found: {args.folder}",
                    code=ErrorCode.FOLDER_NOT_FOUND,
                )
            notes = repository.query(
                quick_filter=args.filter,
                folder_id=args.folder,
                tag=args.tag,
                search_text=args.text,
                sort=args.sort,
            )
            for note in notes:
                flag = "*" if note.is_favorite else " "
                print(f"{flag} {note.id}  {note.modified_at:%Y-%m-%d}  {note.title or '(untitled)'}")

        elif args.command == "search":
            search = SearchService(repository, store, config)
            await search.load()
            await search.set_query(args.query)
            results = search.search()
            if args.format:
                print(search.export_results(results, args.format))
            else:
                for note in results:
                    print(f"{note.id}  {note.title}")
                _print(search.get_search_stats(len(repository.get_all_notes()), len(results)))

        elif args.command == "sync":
            remote = SimulatedRemote.from_config(config)
            if args.failure_rate is not None:
                remote.failure_rate = args.failure_rate
            sync = SyncService(store, remote, config, on_synced=repository.mark_synced)
            report = await sync.run_cycle()
            _print(report.to_dict())
            return 0 if report.error is None else 1

        elif args.command == "export":
            if args.note:
                note = repository.get_note(args.note)
                if note is None:
                    raise NoteNotFoundError(args.note)
                text = export_note(note, args.format)
            else:
                text = export_collection(
                    repository.get_all_notes(),
                    [summary.folder for summary in repository.get_folders()],
                    args.format,
                )
            _write_output(text, args.output)

        elif args.command == "import":
            data = Path(args.path).read_text(encoding="utf-8")
            note = repository.import_note(data, args.format)
            await repository.flush()
            print(note.id)

        elif args.command == "backup":
            manager = BackupManager(store, config=config)
            if args.list:
                _print(manager.list_backups())
            else:
                path = await manager.create_backup(label=args.label)
                if path is None:
                    return 1
                print(path)

        elif args.command == "restore":
            manager = BackupManager(store, config=config)
            if not await manager.restore_backup(args.path):
                return 1

        return 0
    finally:
        await store.close()


def main(argv=None):
    """Run the notekeep command line interface."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.WARNING)
    try:
        configure_logging(log_dir=args.log_dir, level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logger.warning(f"Failed to configure file logging: {e}")

    try:
        exit_code = asyncio.run(run_command(args))
    except NotekeepError as e:
        logger.error(str(e))
        exit_code = 1
    finally:
        logger.debug(f"Metrics: {metrics.get_summary()}")
        if args.metrics_file:
            metrics.save_metrics(args.metrics_file)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
