#!/usr/bin/env python3
"""
CLI for creating, publishing and fetching site snapshots.

Usage:
    sitesnap create --path ./site --project myblog --description "Before upgrade" --db_name site.db
    sitesnap push   [SNAPSHOT_ID] [--repository team] [--small] [--no_scrub] [--exclude cache]...
    sitesnap pull   SNAPSHOT_ID [--repository team]
    sitesnap list   [--rebuild-index]
    sitesnap search [PROJECT] [--repository team]
    sitesnap delete SNAPSHOT_ID
    sitesnap pack   SNAPSHOT_ID --out archive.zip [--encrypt]
    sitesnap unpack --in archive.zip[.enc]
    sitesnap restore SNAPSHOT_ID --out ./restored
    sitesnap repositories
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional

from dotenv import load_dotenv

from .config.config_loader import SitesnapConfig
from .core.exceptions import SitesnapError, ValidationError
from .core.logging import SnapshotLogAdapter, configure_logging
from .snapshot.cache import LocalCache
from .snapshot.models import DbCredentials, SnapshotOptions
from .snapshot.orchestrator import SnapshotOrchestrator
from .snapshot.pack import SnapshotPacker, SnapshotUnpacker, get_encryption_key
from .snapshot.packager import Packager
from .snapshot.repository import build_repository
from .snapshot.scrub import Scrubber
from .validation import ValidationResult, validate_description, validate_slug

logger = logging.getLogger(__name__)

DATABASE_EXPORT_NAME = "database.ndjson"


def build_cache(config: SitesnapConfig) -> LocalCache:
    return LocalCache(
        config.cache_dir,
        lock_timeout=config.lock_timeout,
        stale_lock_seconds=config.stale_lock_seconds,
    )


def build_orchestrator(
    config: SitesnapConfig,
    repository_name: Optional[str] = None,
    require_repository: bool = True,
) -> SnapshotOrchestrator:
    """Wire the orchestrator and its collaborators from configuration."""
    repository = None
    if require_repository or repository_name:
        resolution = config.resolve_repository(repository_name)
        if not resolution.explicit:
            logger.info(f"Using default repository '{resolution.name}'")
        repository = build_repository(resolution.record)

    packager = Packager(
        max_workers=config.max_workers,
        small_row_limit=config.small_row_limit,
        small_binary_limit=config.small_binary_limit,
        uploads_dir=config.uploads_dir,
        table_prefix=config.table_prefix,
        scrubber=Scrubber(table_prefix=config.table_prefix),
    )
    return SnapshotOrchestrator(
        cache=build_cache(config),
        packager=packager,
        repository=repository,
        author=config.author,
        retry_config=config.retry,
        max_workers=config.max_workers,
        log=SnapshotLogAdapter(logging.getLogger("sitesnap")),
    )


def prompt_until_valid(
    label: str,
    validator: Callable[[Optional[str]], ValidationResult],
    current: Optional[str] = None,
    input_fn: Callable[[str], str] = input,
) -> str:
    """
    Validate a value given on the command line, or prompt for a missing one.

    A value that was given but is invalid raises ValidationError. Missing
    values are prompted for until valid; non-interactive sessions get the
    validation error instead.
    """
    result = validator(current)
    if result.valid or current is not None:
        return result.unwrap()
    if input_fn is input and not sys.stdin.isatty():
        return result.unwrap()

    while True:
        try:
            entered = input_fn(f"{label}: ")
        except EOFError:
            return result.unwrap()
        result = validator(entered)
        if result.valid:
            return result.value
        print(result.error.message, file=sys.stderr)


def confirm(question: str, assume_yes: bool, input_fn: Callable[[str], str] = input) -> bool:
    if assume_yes:
        return True
    try:
        answer = input_fn(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def options_from_args(args, config: SitesnapConfig, input_fn: Callable[[str], str] = input) -> SnapshotOptions:
    """Build SnapshotOptions, prompting for a missing project or description."""
    project = prompt_until_valid("Project slug", validate_slug, args.project, input_fn)
    description = prompt_until_valid("Description", validate_description, args.description, input_fn)

    db = None
    if args.db_name:
        db = DbCredentials(
            name=args.db_name,
            host=args.db_host,
            user=args.db_user,
            password=args.db_password,
            driver=args.db_driver,
        )

    return SnapshotOptions(
        path=Path(args.path),
        project=project,
        description=description,
        db=db,
        no_scrub=args.no_scrub,
        small=args.small,
        exclude=list(args.exclude or []),
        exclude_uploads=args.exclude_uploads,
        repository=getattr(args, "repository", None),
    )


def confirm_risky_options(options: SnapshotOptions, assume_yes: bool, input_fn: Callable[[str], str] = input) -> bool:
    if options.small and options.db is not None:
        if not confirm(
            f"Small mode permanently deletes rows from {options.db.describe()}. Continue?",
            assume_yes,
            input_fn,
        ):
            return False
    if options.no_scrub and options.db is not None:
        if not confirm("The snapshot will contain unscrubbed personal data. Continue?", assume_yes, input_fn):
            return False
    return True


def cmd_create(args, config: SitesnapConfig) -> int:
    orchestrator = build_orchestrator(config, args.repository, require_repository=False)
    options = options_from_args(args, config)
    if not confirm_risky_options(options, args.yes):
        logger.error("Aborted")
        return 1
    snapshot = orchestrator.create(options)
    print(snapshot.id)
    return 0


def cmd_push(args, config: SitesnapConfig) -> int:
    repository_name = args.repository
    if args.snapshot_id is not None and repository_name is None:
        # a cached snapshot goes back to the repository it was created for
        repository_name = build_cache(config).load(args.snapshot_id).repository

    orchestrator = build_orchestrator(config, repository_name)
    options = None
    if args.snapshot_id is None:
        options = options_from_args(args, config)
        if not confirm_risky_options(options, args.yes):
            logger.error("Aborted")
            return 1

    report = orchestrator.push(args.snapshot_id, options)
    print(report.summary())
    if args.json:
        print("\n" + json.dumps(report.to_dict(), indent=2))
    return 0 if report.ok else 1


def cmd_pull(args, config: SitesnapConfig) -> int:
    orchestrator = build_orchestrator(config, args.repository)
    report = orchestrator.pull(args.snapshot_id)
    print(report.summary())
    if args.json:
        print("\n" + json.dumps(report.to_dict(), indent=2))
    return 0 if report.ok else 1


def cmd_list(args, config: SitesnapConfig) -> int:
    cache = build_cache(config)
    if args.rebuild_index:
        count = cache.rebuild_index()
        logger.info(f"Rebuilt cache index ({count} snapshots)")
    entries = cache.list_snapshots()
    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return 0
    if not entries:
        print("No cached snapshots.")
        return 0
    for entry in entries:
        flags = " small" if entry.small else ""
        print(f"{entry.id}  {entry.created_at[:19]}  {entry.project:<20} {entry.state:<16}{flags}  {entry.description}")
    return 0


def cmd_search(args, config: SitesnapConfig) -> int:
    resolution = config.resolve_repository(args.repository)
    repository = build_repository(resolution.record)
    records = repository.search(args.project)
    if args.json:
        print(json.dumps([{k: v for k, v in r.items() if k != "manifest"} for r in records], indent=2))
        return 0
    if not records:
        print(f"No snapshots found in {repository.name}.")
        return 0
    for record in records:
        print(
            f"{record.get('id')}  {str(record.get('created_at') or '')[:19]}  "
            f"{record.get('project', ''):<20} {record.get('description', '')}"
        )
    return 0


def cmd_delete(args, config: SitesnapConfig) -> int:
    removed = build_cache(config).delete(args.snapshot_id)
    logger.info(f"Deleted {args.snapshot_id} ({removed} blocks freed)")
    return 0


def cmd_pack(args, config: SitesnapConfig) -> int:
    encryption_key = None
    if args.encrypt:
        encryption_key = get_encryption_key(key_source="env", prompt=True)
        if not encryption_key:
            logger.error("Encryption key not found. Set SITESNAP_ENCRYPTION_KEY env var.")
            return 1

    packer = SnapshotPacker(
        cache=build_cache(config),
        snapshot_id=args.snapshot_id,
        encrypt=args.encrypt,
        encryption_key=encryption_key,
    )
    result_path = packer.pack(Path(args.out))
    print(result_path)
    return 0


def cmd_unpack(args, config: SitesnapConfig) -> int:
    archive_path = Path(args.input)
    decryption_key = None
    if archive_path.suffix == ".enc":
        decryption_key = get_encryption_key(key_source="env", prompt=True)
        if not decryption_key:
            logger.error("Decryption key not found. Set SITESNAP_ENCRYPTION_KEY env var.")
            return 1

    snapshot = SnapshotUnpacker(archive_path, decryption_key=decryption_key).unpack(build_cache(config))
    print(snapshot.id)
    return 0


def cmd_restore(args, config: SitesnapConfig) -> int:
    cache = build_cache(config)
    out = Path(args.out)
    written = cache.materialize(args.snapshot_id, out / "files", out / DATABASE_EXPORT_NAME)
    logger.info(f"Restored {written} entries to {out}")
    return 0


def cmd_repositories(args, config: SitesnapConfig) -> int:
    if not config.repositories:
        print("No repositories configured.")
        return 0
    for index, record in enumerate(config.repositories):
        marker = "*" if index == 0 else " "
        print(f"{marker} {record.name:<16} {record.type:<10} {record.path or ''}")
    return 0


def add_snapshot_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--path", default=".", help="Site root directory (default: current directory)")
    parser.add_argument("--project", help="Project slug (letters, numbers, _ and -)")
    parser.add_argument("--description", help="Snapshot description")
    parser.add_argument("--no_scrub", action="store_true", help="Do not scrub personal data")
    parser.add_argument("--small", action="store_true",
                        help="Trim data to a small sample (deletes rows from the local database)")
    parser.add_argument("--exclude", action="append", default=None, metavar="PATTERN",
                        help="Path or glob to exclude (repeatable)")
    parser.add_argument("--exclude_uploads", action="store_true", help="Exclude the uploads directory")
    parser.add_argument("--db_host", help="Database host")
    parser.add_argument("--db_name", help="Database name (file path for sqlite)")
    parser.add_argument("--db_user", help="Database user")
    parser.add_argument("--db_password", help="Database password")
    parser.add_argument("--db_driver", default="sqlite", help="'sqlite' or an ODBC driver name")
    parser.add_argument("--yes", action="store_true", help="Do not ask for confirmation")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="sitesnap",
        description="Snapshot, scrub and share web sites",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose/debug logging")
    parser.add_argument("--log-json", action="store_true", help="Emit JSON-structured logs")
    parser.add_argument("--config", help="Path to config.yaml")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    create_parser = subparsers.add_parser("create", help="Create a snapshot in the local cache")
    add_snapshot_options(create_parser)
    create_parser.add_argument("--repository", help="Repository name recorded on the snapshot")

    push_parser = subparsers.add_parser("push", help="Push a snapshot (creating one if no id is given)")
    push_parser.add_argument("snapshot_id", nargs="?", help="Cached snapshot to push")
    push_parser.add_argument("--repository", help="Repository name (default: first configured)")
    push_parser.add_argument("--json", action="store_true", help="Output report as JSON")
    add_snapshot_options(push_parser)

    pull_parser = subparsers.add_parser("pull", help="Pull a snapshot into the local cache")
    pull_parser.add_argument("snapshot_id", help="Snapshot id")
    pull_parser.add_argument("--repository", help="Repository name (default: first configured)")
    pull_parser.add_argument("--json", action="store_true", help="Output report as JSON")

    list_parser = subparsers.add_parser("list", help="List cached snapshots")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    list_parser.add_argument("--rebuild-index", action="store_true",
                             help="Rebuild the cache index from the snapshot directories first")

    search_parser = subparsers.add_parser("search", help="Search a repository")
    search_parser.add_argument("project", nargs="?", help="Project slug to filter by")
    search_parser.add_argument("--repository", help="Repository name (default: first configured)")
    search_parser.add_argument("--json", action="store_true", help="Output as JSON")

    delete_parser = subparsers.add_parser("delete", help="Delete a cached snapshot")
    delete_parser.add_argument("snapshot_id", help="Snapshot id")

    pack_parser = subparsers.add_parser("pack", help="Pack a cached snapshot into an archive")
    pack_parser.add_argument("snapshot_id", help="Snapshot id")
    pack_parser.add_argument("--out", required=True, help="Output archive path")
    pack_parser.add_argument("--encrypt", action="store_true", help="Encrypt the archive")

    unpack_parser = subparsers.add_parser("unpack", help="Unpack an archive into the local cache")
    unpack_parser.add_argument("--in", dest="input", required=True, help="Input archive path")

    restore_parser = subparsers.add_parser("restore", help="Write a cached snapshot's files and database export")
    restore_parser.add_argument("snapshot_id", help="Snapshot id")
    restore_parser.add_argument("--out", required=True, help="Output directory")

    subparsers.add_parser("repositories", help="List configured repositories")

    return parser.parse_args(argv)


COMMANDS = {
    "create": cmd_create,
    "push": cmd_push,
    "pull": cmd_pull,
    "list": cmd_list,
    "search": cmd_search,
    "delete": cmd_delete,
    "pack": cmd_pack,
    "unpack": cmd_unpack,
    "restore": cmd_restore,
    "repositories": cmd_repositories,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    load_dotenv()
    args = parse_args(argv)

    configure_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        structured=args.log_json,
    )

    handler = COMMANDS.get(args.command)
    if handler is None:
        print("No command specified. Use --help for usage.", file=sys.stderr)
        return 1

    try:
        config = SitesnapConfig(Path(args.config) if args.config else None)
        return handler(args, config)
    except ValidationError as e:
        logger.error(f"Invalid input: {e}")
        return 1
    except SitesnapError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 1


if __name__ == "__main__":
    sys.exit(main())
